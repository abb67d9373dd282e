from medconsult.utils.hashing import sign_payload, verify_signature
from medconsult.utils.identifiers import SessionKind, parse_session_identifier

__all__ = [
    "sign_payload", "verify_signature",
    "SessionKind", "parse_session_identifier",
]
