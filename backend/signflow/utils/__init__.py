from signflow.utils.security import (
    create_executed_file_token,
    decode_executed_file_token,
    generate_signing_token,
    hash_signing_token,
)

__all__ = [
    "create_executed_file_token",
    "decode_executed_file_token",
    "generate_signing_token",
    "hash_signing_token",
]
