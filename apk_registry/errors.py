"""
Error types raised by the APK registry.

Every error is raised synchronously and aborts the whole call; nothing is
retried internally.
"""


class ApkRegistryError(Exception):
    """Base class for all registry errors"""


class Unauthorized(ApkRegistryError, PermissionError):
    """Caller is not the registry coordinator"""


class InvalidContribution(ApkRegistryError, ValueError):
    """Public key hashes to the zero pubkey hash"""


class OwnershipMismatch(ApkRegistryError, ValueError):
    """Operator does not own the public key according to the compendium"""


class NoHistoryBeforeBlock(ApkRegistryError, LookupError):
    """No apk update was effective at or before the requested block"""


class IndexTooRecent(ApkRegistryError, ValueError):
    """Apk update at the supplied index became effective after the block"""


class StaleIndex(ApkRegistryError, ValueError):
    """Apk update at the supplied index was superseded at or before the block"""


class HistoryIndexOutOfRange(ApkRegistryError, IndexError):
    """Supplied index does not exist in the quorum's apk history"""


class InvalidPoint(ApkRegistryError, ValueError):
    """Coordinates do not describe a point on the BN254 G1 curve"""


class PubkeyAlreadyRegistered(ApkRegistryError, ValueError):
    """Pubkey or operator is already bound in the compendium"""


class InvalidRegistrationSignature(ApkRegistryError, ValueError):
    """ECDSA proof for a pubkey registration did not verify"""


class StorageIntegrityError(ApkRegistryError):
    """Persisted registry state failed a checksum or history invariant"""
