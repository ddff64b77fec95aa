#!/usr/bin/env python3
"""
APK Registry Explorer Launcher

Serves the read-only explorer API over a registry database.

📡 CONFIGURATION:
    The explorer reads the registry from APK_REGISTRY_DB
    (default: registry_data/apk_registry.db).

    export APK_REGISTRY_DB=/var/lib/apk/apk_registry.db
    python3 start_explorer.py --port 8080
"""
import os
import argparse

from apk_registry import config

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="APK Registry Explorer")
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("APK_EXPLORER_PORT", config.DEFAULT_EXPLORER_PORT)),
        help=f"Port to run the explorer on (default: {config.DEFAULT_EXPLORER_PORT})"
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="Registry database path (overrides APK_REGISTRY_DB)"
    )
    args = parser.parse_args()

    if args.db:
        os.environ["APK_REGISTRY_DB"] = args.db

    import uvicorn
    from apk_registry.explorer import app as explorer_app

    db_path = os.getenv("APK_REGISTRY_DB", config.DEFAULT_DB_PATH)

    print(f"Starting APK Registry Explorer on port {args.port}...")
    print(f"")
    print(f"📡 Configuration:")
    print(f"   Explorer API: http://0.0.0.0:{args.port}/api/quorums")
    print(f"   Registry DB:  {db_path}")
    if not os.path.exists(db_path):
        print(f"⚠️  Database not found yet - requests return 503 until it exists")
    print(f"")
    print(f"Press Ctrl+C to stop")
    print(f"")

    uvicorn.run(explorer_app, host="0.0.0.0", port=args.port, log_level="info")
