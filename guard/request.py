"""Per-request facts handed to the engine by the caller (e.g. HTTP middleware)."""

from dataclasses import dataclass, field


def client_address(headers: dict, remote_address: str | None) -> str:
    """First X-Forwarded-For hop, else the socket peer, else 'unknown'."""
    forwarded = (headers or {}).get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return remote_address or "unknown"


@dataclass
class InboundRequest:
    method: str
    path: str
    source_address: str
    user_agent: str = ""
    headers: dict = field(default_factory=dict)
    user_id: str | None = None
    body: dict | None = None
    query: dict | None = None

    def __post_init__(self):
        self.method = str(self.method or "GET").upper()
        self.path = str(self.path or "/")
        self.source_address = self.source_address or "unknown"
        self.headers = {str(k).lower(): v for k, v in (self.headers or {}).items()}
        if not self.user_agent:
            self.user_agent = self.headers.get("user-agent") or ""

    @classmethod
    def from_dict(cls, data: dict) -> "InboundRequest":
        """Build from a JSON record; resolves the address from headers if needed."""
        headers = {str(k).lower(): v for k, v in (data.get("headers") or {}).items()}
        return cls(
            method=data.get("method"),
            path=data.get("path"),
            source_address=data.get("source_address")
            or client_address(headers, data.get("remote_address")),
            user_agent=data.get("user_agent"),
            headers=headers,
            user_id=data.get("user_id"),
            body=data.get("body"),
            query=data.get("query"),
        )

    @property
    def content_length(self) -> int:
        try:
            return int(self.headers.get("content-length", 0))
        except (TypeError, ValueError):
            return 0

    def context(self) -> dict:
        """Fields abuse-pattern selections can match on."""
        return {
            "event": "request",
            "method": self.method,
            "path": self.path,
            "user_agent": self.user_agent or "unknown",
            "authenticated": self.user_id is not None,
        }
