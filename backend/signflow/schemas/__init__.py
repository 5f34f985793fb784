from signflow.schemas import common, signing

__all__ = [
    "common",
    "signing",
]
