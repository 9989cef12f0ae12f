from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Deque, List, Optional
from urllib.parse import urlencode

from pilotlog.logging import get_logger
from pilotlog.storage.models import TokenPurpose

logger = get_logger(__name__)

_LINK_PATHS = {
    TokenPurpose.APPROVAL: "/v1/auth/approve",
    TokenPurpose.PASSWORD_RESET: "/reset-password",
    TokenPurpose.EMAIL_VERIFICATION: "/v1/auth/verify-email",
}


@dataclass(frozen=True)
class OutboundLink:
    purpose: TokenPurpose
    recipient: str
    url: str
    token: str


class TokenNotifier:
    """Hands issued token links to whoever delivers them.

    Mail delivery is not part of this service. Links are logged with the
    recipient and token redacted. With ``capture=True`` (test mode) they
    are also kept in ``outbox`` so callers can read them back.
    """

    def __init__(
        self, base_url: Optional[str], *, capture: bool = False, max_outbox: int = 100
    ) -> None:
        self.base_url = (base_url or "http://localhost:8000").rstrip("/")
        self.capture = capture
        self.outbox: Deque[OutboundLink] = deque(maxlen=max_outbox)

    def build_link(self, purpose: TokenPurpose, token: str) -> str:
        return f"{self.base_url}{_LINK_PATHS[purpose]}?{urlencode({'token': token})}"

    def send(self, purpose: TokenPurpose, recipient: str, token: str) -> OutboundLink:
        link = OutboundLink(
            purpose=purpose,
            recipient=recipient,
            url=self.build_link(purpose, token),
            token=token,
        )
        logger.info("token_link_issued", purpose=purpose.value, recipient_email=recipient)
        if self.capture:
            self.outbox.append(link)
        return link

    def sent_to(self, recipient: str, purpose: Optional[TokenPurpose] = None) -> List[OutboundLink]:
        return [
            link
            for link in self.outbox
            if link.recipient == recipient and (purpose is None or link.purpose == purpose)
        ]
