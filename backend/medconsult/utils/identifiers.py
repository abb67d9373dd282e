"""
Session Identifiers — one parse at the API boundary instead of prefix checks
scattered through the services.

Accepted forms: "text_12", "call_7", "direct_<appointment id>", or a bare id
together with an explicit kind.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from medconsult.errors import NotFound


class SessionKind(str, Enum):
    TEXT = "text"
    CALL = "call"
    DIRECT = "direct"  # appointment sessions, owned by the scheduling service


@dataclass(frozen=True)
class SessionIdentifier:
    kind: SessionKind
    value: Union[int, str]

    def __str__(self) -> str:
        return f"{self.kind.value}_{self.value}"

    @property
    def is_engine_owned(self) -> bool:
        return self.kind in (SessionKind.TEXT, SessionKind.CALL)


def parse_session_identifier(raw: Union[str, int], kind: Optional[SessionKind] = None) -> SessionIdentifier:
    """Resolve a raw identifier into a SessionIdentifier.

    Raises:
        NotFound: If the identifier cannot name any session.
    """
    text = str(raw).strip()

    if kind is None:
        prefix, sep, rest = text.partition("_")
        if not sep:
            raise NotFound(f"Session identifier '{text}' has no kind prefix")
        try:
            kind = SessionKind(prefix.lower())
        except ValueError:
            raise NotFound(f"Unknown session kind '{prefix}'")
        text = rest

    if not text:
        raise NotFound("Empty session identifier")

    if kind is SessionKind.DIRECT:
        return SessionIdentifier(kind, text)

    if not text.isdigit():
        raise NotFound(f"Invalid {kind.value} session id '{text}'")
    return SessionIdentifier(kind, int(text))
