"""
Access scope - which dashboard a view is looking at.

An authenticated view is scoped by account id; a public view is scoped by a
share token. The scope supplies the subscription key for the push channel,
its query parameters, the token for history calls, and the snapshot fetch.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from .models import Dashboard

if TYPE_CHECKING:
    from .client import MonitorApiClient


class ScopeKind(str, Enum):
    ACCOUNT = "account"
    SHARE = "share"


@dataclass(frozen=True)
class AccessScope:
    """
    Account or share-token scope for one dashboard view.

    Usage:
        scope = AccessScope.account("acct_1")
        scope = AccessScope.shared("0b7c...")
    """
    kind: ScopeKind
    account_id: Optional[str] = None
    share_token: Optional[str] = None

    def __post_init__(self):
        if self.kind == ScopeKind.SHARE and not self.share_token:
            raise ValueError("Share scope requires a share token")

    @classmethod
    def account(cls, account_id: Optional[str] = None) -> "AccessScope":
        """Authenticated scope; None selects the session's default account."""
        return cls(kind=ScopeKind.ACCOUNT, account_id=account_id or None)

    @classmethod
    def shared(cls, token: str) -> "AccessScope":
        """Public read-only scope."""
        return cls(kind=ScopeKind.SHARE, share_token=token)

    @property
    def is_shared(self) -> bool:
        return self.kind == ScopeKind.SHARE

    @property
    def key(self) -> str:
        """Subscription key; one live channel per key."""
        if self.is_shared:
            return f"share:{self.share_token}"
        return f"account:{self.account_id or 'default'}"

    @property
    def history_token(self) -> Optional[str]:
        """Token passed to health-history calls (share scope only)."""
        return self.share_token if self.is_shared else None

    def channel_params(self) -> dict[str, str]:
        """Query parameters selecting this scope on the push endpoint."""
        if self.is_shared:
            return {"token": self.share_token}
        if self.account_id:
            return {"account_id": self.account_id}
        return {}

    async def load_dashboard(self, client: "MonitorApiClient") -> Dashboard:
        """Fetch the authoritative snapshot for this scope."""
        if self.is_shared:
            return await client.get_shared_dashboard(self.share_token)
        return await client.get_dashboard(self.account_id)
