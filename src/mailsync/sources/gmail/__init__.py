from .envelope import build_raw_message, decode_base64url, encode_base64url
from .gateway import GmailGateway, RevokeOutcome
from .mutations import GmailMutations
from .normalizer import normalize
from .tokens import TokenManager

__all__ = [
    "GmailGateway",
    "GmailMutations",
    "RevokeOutcome",
    "TokenManager",
    "build_raw_message",
    "decode_base64url",
    "encode_base64url",
    "normalize",
]
