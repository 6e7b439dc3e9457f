"""Credential refresh with per-account single-flight."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import httpx

from schej.core.config import Settings, get_settings
from schej.domains.calendars.providers.google import refresh_access_token
from schej.domains.calendars.repository import CredentialStore
from schej.domains.calendars.schemas import (
    AppleCalendarAuth,
    CalendarAccount,
    CredentialBundle,
    GoogleCalendarAuth,
)
from schej.utils.errors import AuthExpiredError, UnknownProviderTypeError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _InflightRefresh:
    task: "asyncio.Task[CredentialBundle]"
    waiters: int = 0


class CredentialRefresher:
    """Keeps account credentials usable, refreshing each account at most once at a time.

    The first caller that finds an account's bundle expired starts the
    refresh; concurrent callers for the same account await that same task
    and observe the same outcome. The in-flight map is the only mutable
    state shared between requests.
    """

    def __init__(
        self,
        store: CredentialStore,
        http_client: httpx.AsyncClient,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._store = store
        self._http_client = http_client
        self._clock = clock or _utcnow
        self._leeway = timedelta(seconds=self.settings.token_refresh_leeway_seconds)
        self._inflight: Dict[str, _InflightRefresh] = {}

    @staticmethod
    def _bundle(account: CalendarAccount) -> CredentialBundle:
        bundle = account.credential
        if bundle is None:
            raise UnknownProviderTypeError(account.calendar_type)
        if bundle.revoked:
            raise AuthExpiredError(
                f"Credentials for calendar account {account.id} were revoked",
                account_id=account.id,
            )
        return bundle

    async def ensure_fresh(self, account: CalendarAccount) -> CalendarAccount:
        """Return ``account`` with a bundle that will not expire within the leeway."""
        bundle = self._bundle(account)
        if not bundle.needs_refresh(self._clock(), self._leeway):
            return account
        refreshed = await self._single_flight(account, rejected=None)
        return account.with_credential(refreshed)

    async def force_refresh(self, account: CalendarAccount) -> CalendarAccount:
        """Refresh regardless of expiry, after a provider rejected the current bundle."""
        bundle = self._bundle(account)
        refreshed = await self._single_flight(account, rejected=bundle)
        return account.with_credential(refreshed)

    async def _single_flight(
        self,
        account: CalendarAccount,
        *,
        rejected: Optional[CredentialBundle],
    ) -> CredentialBundle:
        entry = self._inflight.get(account.id)
        if entry is None:
            task = asyncio.ensure_future(self._refresh(account, rejected))
            entry = _InflightRefresh(task=task)
            self._inflight[account.id] = entry
            task.add_done_callback(lambda done, key=account.id: self._forget(key, done))
        else:
            logger.debug("Joining in-flight credential refresh for account %s", account.id)

        entry.waiters += 1
        try:
            return await asyncio.shield(entry.task)
        finally:
            entry.waiters -= 1
            # Nobody is left to observe the result.
            if entry.waiters == 0 and not entry.task.done():
                entry.task.cancel()

    def _forget(self, account_id: str, task: "asyncio.Task[CredentialBundle]") -> None:
        entry = self._inflight.get(account_id)
        if entry is not None and entry.task is task:
            del self._inflight[account_id]
        if not task.cancelled():
            # Mark the exception retrieved; waiters already received it.
            task.exception()

    async def _refresh(
        self,
        account: CalendarAccount,
        rejected: Optional[CredentialBundle],
    ) -> CredentialBundle:
        stored = await self._store.get_credential(account.id)
        if stored.revoked:
            raise AuthExpiredError(
                f"Credentials for calendar account {account.id} were revoked",
                account_id=account.id,
            )

        if isinstance(stored, AppleCalendarAuth):
            if rejected is None:
                return stored
            # App-specific passwords cannot be refreshed; a rejection is final.
            await self._revoke(account.id, stored)
            raise AuthExpiredError(
                f"iCloud rejected the app-specific password for calendar account {account.id}",
                account_id=account.id,
            )

        now = self._clock()
        if rejected is None:
            if not stored.needs_refresh(now, self._leeway):
                return stored
        elif (
            isinstance(rejected, GoogleCalendarAuth)
            and stored.access_token != rejected.access_token
            and not stored.needs_refresh(now, self._leeway)
        ):
            # Another process already replaced the rejected token.
            return stored

        if not stored.refresh_token:
            logger.warning("Calendar account %s has no refresh token", account.id)
            raise AuthExpiredError(
                f"Calendar account {account.id} has no refresh token",
                account_id=account.id,
            )

        try:
            tokens = await refresh_access_token(
                self._http_client,
                stored.refresh_token,
                settings=self.settings,
            )
        except AuthExpiredError as exc:
            await self._revoke(account.id, stored)
            raise AuthExpiredError(str(exc), account_id=account.id) from exc

        refreshed = stored.model_copy(
            update={
                "access_token": tokens.access_token,
                "refresh_token": tokens.refresh_token or stored.refresh_token,
                "expires_at": tokens.expires_at(self._clock()),
                "scope": tokens.scope or stored.scope,
            }
        )
        await self._store.update_credential(account.id, refreshed)
        logger.info("Refreshed credentials for calendar account %s", account.id)
        return refreshed

    async def _revoke(self, account_id: str, bundle: CredentialBundle) -> None:
        logger.warning("Revoking credentials for calendar account %s", account_id)
        await self._store.update_credential(account_id, bundle.model_copy(update={"revoked": True}))
