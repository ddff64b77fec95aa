"""APK registry test suite."""
