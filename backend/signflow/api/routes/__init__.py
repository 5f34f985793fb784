from . import executed_files, health, public_signing

__all__ = [
    "executed_files",
    "health",
    "public_signing",
]
