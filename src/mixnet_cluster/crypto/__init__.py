from .identity import (
    KEY_SIZE,
    Identity,
    LinkKey,
    decode_key,
    encode_key,
    generate_identity,
    generate_link_key,
)

__all__ = [
    "KEY_SIZE",
    "Identity",
    "LinkKey",
    "decode_key",
    "encode_key",
    "generate_identity",
    "generate_link_key",
]
