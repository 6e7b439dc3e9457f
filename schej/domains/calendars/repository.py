"""Credential persistence for linked calendar accounts."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from postgrest import APIError
from pydantic import ValidationError
from supabase import Client

from schej.db.session import get_service_client
from schej.domains.calendars.schemas import (
    AppleCalendarAuth,
    CalendarAccount,
    CalendarType,
    CredentialBundle,
    GoogleCalendarAuth,
)
from schej.utils.errors import CredentialStoreError

logger = logging.getLogger(__name__)

ACCOUNTS_TABLE = "calendar_accounts"

_BUNDLE_COLUMNS: Dict[CalendarType, Tuple[str, type]] = {
    CalendarType.GOOGLE: ("google_calendar_auth", GoogleCalendarAuth),
    CalendarType.APPLE: ("apple_calendar_auth", AppleCalendarAuth),
}


class CredentialStore(Protocol):
    """Where credential bundles live between requests."""

    async def get_credential(self, account_id: str) -> CredentialBundle:
        ...

    async def update_credential(self, account_id: str, bundle: CredentialBundle) -> None:
        ...


def _column_for(bundle: CredentialBundle) -> str:
    if isinstance(bundle, GoogleCalendarAuth):
        return _BUNDLE_COLUMNS[CalendarType.GOOGLE][0]
    return _BUNDLE_COLUMNS[CalendarType.APPLE][0]


class SupabaseCredentialStore:
    """Credential store backed by the ``calendar_accounts`` table.

    Bundles are stored as jsonb in ``google_calendar_auth`` /
    ``apple_calendar_auth``, selected by the row's ``calendar_type``.
    """

    def __init__(self, client: Optional[Client] = None) -> None:
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_service_client()
        return self._client

    async def get_credential(self, account_id: str) -> CredentialBundle:
        try:
            result = (
                self.client.table(ACCOUNTS_TABLE)
                .select("calendar_type, google_calendar_auth, apple_calendar_auth")
                .eq("id", account_id)
                .limit(1)
                .execute()
            )
        except APIError as exc:
            raise CredentialStoreError(exc.message) from exc

        if not result.data:
            raise CredentialStoreError(f"Calendar account {account_id} not found")
        row = result.data[0]

        try:
            column, model = _BUNDLE_COLUMNS[CalendarType(row.get("calendar_type"))]
        except (KeyError, ValueError) as exc:
            raise CredentialStoreError(
                f"Calendar account {account_id} has unsupported calendar_type {row.get('calendar_type')!r}"
            ) from exc

        payload = row.get(column)
        if not payload:
            raise CredentialStoreError(f"Calendar account {account_id} has no {column}")
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise CredentialStoreError(f"Calendar account {account_id} has an invalid {column}") from exc

    async def update_credential(self, account_id: str, bundle: CredentialBundle) -> None:
        column = _column_for(bundle)
        try:
            result = (
                self.client.table(ACCOUNTS_TABLE)
                .update({column: bundle.model_dump(mode="json")})
                .eq("id", account_id)
                .execute()
            )
        except APIError as exc:
            raise CredentialStoreError(exc.message) from exc
        if not result.data:
            raise CredentialStoreError(f"Calendar account {account_id} not found")


class InMemoryCredentialStore:
    """Dictionary-backed credential store for tests and single-process use."""

    def __init__(self, accounts: Iterable[CalendarAccount] = ()) -> None:
        self._bundles: Dict[str, CredentialBundle] = {}
        self.updates: List[Tuple[str, CredentialBundle]] = []
        for account in accounts:
            self.add(account)

    def add(self, account: CalendarAccount) -> None:
        if account.credential is None:
            raise CredentialStoreError(f"Calendar account {account.id} has no credential bundle")
        self._bundles[account.id] = account.credential

    async def get_credential(self, account_id: str) -> CredentialBundle:
        try:
            return self._bundles[account_id]
        except KeyError as exc:
            raise CredentialStoreError(f"Calendar account {account_id} not found") from exc

    async def update_credential(self, account_id: str, bundle: CredentialBundle) -> None:
        if account_id not in self._bundles:
            raise CredentialStoreError(f"Calendar account {account_id} not found")
        self._bundles[account_id] = bundle
        self.updates.append((account_id, bundle))

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._bundles)
