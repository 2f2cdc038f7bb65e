"""Account collaborator used for credential rotation on usage limits."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

LOG = logging.getLogger(__name__)


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    ERROR = "error"


@dataclass(frozen=True)
class Credentials:
    """What the engine needs from an account to authenticate one request."""

    bearer_token: str
    account_id: str | None = None
    organization_id: str | None = None
    project_id: str | None = None
    label: str | None = None

    def headers(self) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.bearer_token}"}
        if self.account_id:
            headers["ChatGPT-Account-Id"] = self.account_id
        if self.organization_id:
            headers["OpenAI-Organization"] = self.organization_id
        if self.project_id:
            headers["OpenAI-Project"] = self.project_id
        return headers


@dataclass
class Account:
    id: str
    display_name: str
    credentials: Credentials
    provider: str = ""
    status: AccountStatus = AccountStatus.ACTIVE
    metadata: dict[str, Any] = field(default_factory=dict)


class AccountProvider(Protocol):
    """Hands out credentials and switches accounts when one hits its quota."""

    def current(self) -> Credentials | None:
        ...

    def rotate(self, *, reason: str, resets_at: float | None = None) -> Credentials | None:
        """Mark the current account exhausted and switch to another one.

        Returns the new credentials, or None when no other account is usable.
        """
        ...


class StaticAccountPool:
    """In-memory `AccountProvider` over a fixed list of accounts.

    An account marked as over quota becomes eligible again once its
    `quota_resets_at` time has passed.
    """

    def __init__(
        self,
        accounts: list[Account],
        *,
        load_balance: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not accounts:
            raise ValueError("account pool needs at least one account")
        self._accounts = list(accounts)
        self._load_balance = load_balance
        self._clock = clock
        self._current_id = accounts[0].id

    @property
    def current_account(self) -> Account:
        for account in self._accounts:
            if account.id == self._current_id:
                return account
        raise KeyError(self._current_id)

    def current(self) -> Credentials | None:
        return self.current_account.credentials

    def mark_quota_exceeded(self, account_id: str, resets_at: float | None = None) -> None:
        for account in self._accounts:
            if account.id == account_id:
                account.metadata.update(
                    {
                        "quota_exceeded": True,
                        "quota_resets_at": resets_at,
                        "last_quota_error": self._clock(),
                    }
                )
                return
        raise KeyError(account_id)

    def _usable(self, account: Account) -> bool:
        if account.status is not AccountStatus.ACTIVE:
            return False
        if not account.metadata.get("quota_exceeded"):
            return True
        resets_at = account.metadata.get("quota_resets_at")
        return resets_at is not None and resets_at <= self._clock()

    def alternates(self) -> list[Account]:
        return [acc for acc in self._accounts if acc.id != self._current_id and self._usable(acc)]

    def rotate(self, *, reason: str, resets_at: float | None = None) -> Credentials | None:
        previous = self.current_account
        self.mark_quota_exceeded(previous.id, resets_at)
        candidates = self.alternates()
        if not candidates:
            LOG.warning("no alternate account available account=%s reason=%s", previous.display_name, reason)
            return None
        if not self._load_balance:
            LOG.warning(
                "account quota exceeded account=%s, %s other account(s) available but switching is disabled",
                previous.display_name,
                len(candidates),
            )
            return None
        nxt = candidates[0]
        self._current_id = nxt.id
        LOG.info("switched account from=%s to=%s reason=%s", previous.display_name, nxt.display_name, reason)
        return nxt.credentials
