from typing import Optional
from urllib.parse import parse_qs, urlparse

from pydantic import BaseModel, Field


class CovesSession(BaseModel):
    """
    An authenticated session with the Coves backend.

    The backend performs the OAuth exchange and returns a sealed token to the
    client through the redirect URI. The token is opaque to the client; it is
    only ever sent back as a bearer token or exchanged for a new one.
    """

    token: str = Field(repr=False)
    did: str
    session_id: str
    handle: Optional[str] = None

    @classmethod
    def from_callback_url(cls, url: str) -> "CovesSession":
        """
        Build a session from the OAuth callback URL.

        Raises:
            ValueError: If token, did or session_id is missing
        """
        query = parse_qs(urlparse(url).query)

        def first(name: str) -> Optional[str]:
            values = query.get(name)
            if not values or len(values[0]) == 0:
                return None
            return values[0]

        token = first("token")
        did = first("did")
        session_id = first("session_id")

        if token is None:
            raise ValueError("Missing 'token' parameter in callback URL")
        if did is None:
            raise ValueError("Missing 'did' parameter in callback URL")
        if session_id is None:
            raise ValueError("Missing 'session_id' parameter in callback URL")

        return cls(token=token, did=did, session_id=session_id, handle=first("handle"))

    def to_storage(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_storage(cls, value: str) -> "CovesSession":
        return cls.model_validate_json(value)

    def with_token(self, token: str) -> "CovesSession":
        return self.model_copy(update={"token": token})
