"""Service for availability aggregation."""

from __future__ import annotations

import asyncio
import logging
import time as time_module
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

import httpx

from schej.core.config import Settings, get_settings
from schej.core.timing_logger import log_start, log_step
from schej.domains.availability.intervals import (
    clip_intervals,
    merge_intervals,
    pad_intervals,
    slots_to_intervals,
    subtract_intervals,
)
from schej.domains.availability.schemas import (
    AggregationOptions,
    AvailabilityResult,
    AvailabilityTier,
    CalendarDiagnostic,
    CalendarOptions,
    DayAvailability,
    Poll,
    Response,
    TaggedInterval,
    TimeInterval,
    TimeWindow,
)
from schej.domains.calendars.credentials import CredentialRefresher
from schej.domains.calendars.providers import get_calendar_provider
from schej.domains.calendars.providers.base import CalendarProvider
from schej.domains.calendars.repository import CredentialStore
from schej.domains.calendars.schemas import CalendarAccount, EventListing, SubCalendar
from schej.utils.errors import (
    AggregationCancelledError,
    AuthExpiredError,
    CalendarEngineError,
    MalformedResponseError,
    ProviderRequestError,
    ProviderUnavailableError,
    UnknownProviderTypeError,
)

logger = logging.getLogger(__name__)

ProviderFactory = Callable[..., CalendarProvider]
RespondentOutcome = Union[AvailabilityResult, CalendarEngineError]


@dataclass
class AccountContext:
    """Context for a calendar account during one aggregation."""

    account: CalendarAccount
    provider: CalendarProvider

    @property
    def id(self) -> str:
        return self.account.id

    @property
    def email(self) -> str:
        return self.account.email


@dataclass
class CalendarOutcome:
    """Result of fetching one sub-calendar: a listing or a failure reason."""

    calendar_id: str
    account_email: str
    listing: Optional[EventListing] = None
    error: Optional[str] = None


class AvailabilityService:
    """Merges calendar busy data and manual input into per-day availability."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        store: CredentialStore,
        *,
        settings: Optional[Settings] = None,
        refresher: Optional[CredentialRefresher] = None,
        provider_factory: ProviderFactory = get_calendar_provider,
    ) -> None:
        self.settings = settings or get_settings()
        self.http_client = http_client
        self.store = store
        self.refresher = refresher or CredentialRefresher(store, http_client, self.settings)
        self.provider_factory = provider_factory

    # Public API
    async def aggregate_availability(
        self,
        response: Response,
        window: TimeWindow,
        options: Optional[AggregationOptions] = None,
    ) -> AvailabilityResult:
        """
        Aggregate one respondent's availability over ``window``.

        Args:
            response: The respondent's submitted availability and calendar settings
            window: Time window bounding calendar fetches and default day spans
            options: Per-request options; defaults come from settings

        Returns:
            AvailabilityResult with one DayAvailability per day span

        Raises:
            AuthExpiredError: A linked account must be re-authorized
            ProviderUnavailableError: Every enabled sub-calendar failed
            UnknownProviderTypeError: An account names an unsupported provider
            AggregationCancelledError: ``options.cancel_event`` was set
        """
        options = options or AggregationOptions.from_settings(self.settings)
        semaphore = asyncio.Semaphore(options.max_concurrency)
        return await self._run_cancellable(
            self._aggregate(response, window, options, semaphore),
            options.cancel_event,
        )

    async def aggregate_responses(
        self,
        responses: Mapping[str, Response],
        window: TimeWindow,
        options: Optional[AggregationOptions] = None,
    ) -> Dict[str, RespondentOutcome]:
        """Aggregate several respondents concurrently.

        A respondent's failure is returned in its slot instead of failing the
        batch. Unknown provider types still abort the whole request.
        """
        options = options or AggregationOptions.from_settings(self.settings)
        semaphore = asyncio.Semaphore(options.max_concurrency)
        keys = list(responses)

        async def run_one(key: str) -> RespondentOutcome:
            try:
                return await self._aggregate(responses[key], window, options, semaphore)
            except UnknownProviderTypeError:
                raise
            except CalendarEngineError as exc:
                logger.warning("Availability for respondent %s failed: %s", key, exc)
                return exc

        outcomes = await self._run_cancellable(
            _gather_tasks([run_one(key) for key in keys]),
            options.cancel_event,
        )
        return dict(zip(keys, outcomes))

    async def aggregate_poll(
        self,
        poll: Poll,
        window: Optional[TimeWindow] = None,
        options: Optional[AggregationOptions] = None,
        *,
        week_start: Optional[datetime] = None,
    ) -> Dict[str, RespondentOutcome]:
        """Aggregate every response of ``poll`` over its candidate days."""
        window = window or poll.window(week_start)
        options = options or AggregationOptions.from_settings(self.settings)
        if options.days is None:
            options = options.model_copy(update={"days": poll.days(week_start)})
        return await self.aggregate_responses(poll.responses, window, options)

    async def list_sub_calendars(self, account: CalendarAccount) -> Dict[str, SubCalendar]:
        """List an account's calendars, refreshing and retrying once on 401."""
        context = await self._build_account_context(account)
        try:
            return await context.provider.list_calendars()
        except ProviderRequestError as exc:
            if exc.response_status != 401:
                raise
        await self._handle_unauthorized(context, context.account)
        try:
            return await context.provider.list_calendars()
        except ProviderRequestError as exc:
            if exc.response_status == 401:
                raise AuthExpiredError(
                    f"Calendar account {account.id} was rejected after refreshing credentials",
                    account_id=account.id,
                ) from exc
            raise

    # Orchestration
    async def _run_cancellable(
        self,
        work: Awaitable[Any],
        cancel_event: Optional[asyncio.Event],
    ) -> Any:
        if cancel_event is None:
            return await work

        task = asyncio.ensure_future(work)
        stop = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({task, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not task.done():
                task.cancel()
                await asyncio.wait({task})
        if task.cancelled():
            logger.info("Aggregation cancelled by caller")
            raise AggregationCancelledError("Aggregation was cancelled")
        return task.result()

    async def _aggregate(
        self,
        response: Response,
        window: TimeWindow,
        options: AggregationOptions,
        semaphore: asyncio.Semaphore,
    ) -> AvailabilityResult:
        method_start = time_module.time()
        log_start("availability_service.aggregate", details=f"respondent={response.key}")

        days = options.days or window.day_spans()
        result = AvailabilityResult()

        busy: List[TimeInterval] = []
        if response.use_calendar_availability and self._needs_calendar(response, days, options):
            busy = await self._collect_busy(response, window, semaphore, result)

        calendar_options = response.calendar_options or CalendarOptions()
        for day in days:
            result.days[day.start] = self._day_availability(
                response, day, busy, calendar_options, options
            )
        result.diagnostics.sort(key=lambda item: (item.account_email, item.calendar_id))

        log_step(
            "availability_service.aggregate",
            time_module.time() - method_start,
            details=f"respondent={response.key} days={len(days)} partial={result.partial}",
        )
        return result

    def _needs_calendar(
        self,
        response: Response,
        days: List[TimeInterval],
        options: AggregationOptions,
    ) -> bool:
        if not options.manual_overrides_calendar:
            return True
        return any(_manual_for_day(response, day) is None for day in days)

    # Calendar data
    async def _collect_busy(
        self,
        response: Response,
        window: TimeWindow,
        semaphore: asyncio.Semaphore,
        result: AvailabilityResult,
    ) -> List[TimeInterval]:
        enabled_total = 0
        fetches: List[Awaitable[List[CalendarOutcome]]] = []
        for email, calendar_ids in (response.enabled_calendars or {}).items():
            account = response.calendar_accounts.get(email)
            ids = _enabled_calendar_ids(account, calendar_ids)
            if not ids:
                continue
            enabled_total += len(ids)
            if account is None or not account.enabled:
                reason = "calendar account not linked" if account is None else "calendar account disabled"
                for calendar_id in ids:
                    self._degrade(result, calendar_id, email, reason)
                continue
            fetches.append(self._fetch_account(account, ids, window, semaphore))

        if enabled_total == 0:
            return []

        busy: List[TimeInterval] = []
        successes = 0
        for outcomes in await _gather_tasks(fetches):
            for outcome in outcomes:
                if outcome.listing is None:
                    self._degrade(result, outcome.calendar_id, outcome.account_email, outcome.error or "unknown error")
                    continue
                successes += 1
                if outcome.listing.degraded:
                    self._degrade(
                        result,
                        outcome.calendar_id,
                        outcome.account_email,
                        "calendar returned malformed events",
                        malformed_items=len(outcome.listing.malformed),
                    )
                busy.extend(
                    TimeInterval(start=event.start_date, end=event.end_date)
                    for event in outcome.listing
                )

        if successes == 0:
            raise ProviderUnavailableError(
                f"All {enabled_total} enabled calendars failed for respondent {response.key}"
            )

        buffer = (response.calendar_options or CalendarOptions()).buffer_time
        if buffer.enabled:
            return pad_intervals(busy, timedelta(minutes=buffer.time))
        return merge_intervals(busy)

    async def _build_account_context(self, account: CalendarAccount) -> AccountContext:
        account = await self.refresher.ensure_fresh(account)
        return AccountContext(
            account=account,
            provider=self.provider_factory(account, self.http_client, self.settings),
        )

    async def _fetch_account(
        self,
        account: CalendarAccount,
        calendar_ids: List[str],
        window: TimeWindow,
        semaphore: asyncio.Semaphore,
    ) -> List[CalendarOutcome]:
        try:
            context = await self._build_account_context(account)
        except (ProviderUnavailableError, MalformedResponseError) as exc:
            return [
                CalendarOutcome(calendar_id, account.email, error=str(exc))
                for calendar_id in calendar_ids
            ]
        return await _gather_tasks(
            [self._fetch_calendar(context, calendar_id, window, semaphore) for calendar_id in calendar_ids]
        )

    async def _fetch_calendar(
        self,
        context: AccountContext,
        calendar_id: str,
        window: TimeWindow,
        semaphore: asyncio.Semaphore,
    ) -> CalendarOutcome:
        refreshed = False
        while True:
            used_account = context.account
            provider = context.provider
            try:
                async with semaphore:
                    listing = await provider.list_events(calendar_id, window.time_min, window.time_max)
                return CalendarOutcome(calendar_id, context.email, listing=listing)
            except ProviderRequestError as exc:
                if exc.response_status != 401:
                    return CalendarOutcome(
                        calendar_id, context.email, error=f"provider returned status {exc.response_status}"
                    )
                if refreshed:
                    logger.warning("Calendar account %s still unauthorized after refresh", context.id)
                    raise AuthExpiredError(
                        f"Calendar account {context.id} was rejected after refreshing credentials",
                        account_id=context.id,
                    ) from exc
            except (ProviderUnavailableError, MalformedResponseError) as exc:
                return CalendarOutcome(calendar_id, context.email, error=str(exc))
            # Refresh outside the semaphore so other fetches keep moving.
            try:
                await self._handle_unauthorized(context, used_account)
            except (ProviderUnavailableError, MalformedResponseError) as exc:
                return CalendarOutcome(calendar_id, context.email, error=str(exc))
            refreshed = True

    async def _handle_unauthorized(self, context: AccountContext, used_account: CalendarAccount) -> None:
        """Handle unauthorized error by refreshing credentials once per rejected bundle."""
        if context.account is not used_account:
            # A sibling fetch already refreshed this account.
            return
        account = await self.refresher.force_refresh(used_account)
        context.account = account
        context.provider = self.provider_factory(account, self.http_client, self.settings)

    def _degrade(
        self,
        result: AvailabilityResult,
        calendar_id: str,
        account_email: str,
        reason: str,
        *,
        malformed_items: int = 0,
    ) -> None:
        logger.warning("Degraded calendar %s for %s: %s", calendar_id, account_email, reason)
        result.partial = True
        result.degraded_calendars.add(calendar_id)
        result.diagnostics.append(
            CalendarDiagnostic(
                calendar_id=calendar_id,
                account_email=account_email,
                reason=reason,
                malformed_items=malformed_items,
            )
        )

    # Per-day merge
    def _day_availability(
        self,
        response: Response,
        day: TimeInterval,
        busy: List[TimeInterval],
        calendar_options: CalendarOptions,
        options: AggregationOptions,
    ) -> DayAvailability:
        manual = _manual_for_day(response, day)
        if manual is not None and (
            options.manual_overrides_calendar or not response.use_calendar_availability
        ):
            primary = clip_intervals(manual, day)
        elif response.use_calendar_availability:
            free_span = working_hours_span(day, calendar_options)
            primary = subtract_intervals(free_span, busy)
        else:
            primary = clip_intervals(slots_to_intervals(response.availability, options.slot), day)

        if_needed = subtract_intervals(
            clip_intervals(slots_to_intervals(response.if_needed, options.slot), day),
            primary,
        )

        intervals = [
            TaggedInterval(start=interval.start, end=interval.end, tier=AvailabilityTier.AVAILABLE)
            for interval in primary
        ] + [
            TaggedInterval(start=interval.start, end=interval.end, tier=AvailabilityTier.IF_NEEDED)
            for interval in if_needed
        ]
        intervals.sort(key=lambda interval: (interval.start, interval.end))
        return DayAvailability(day_start=day.start, day_end=day.end, intervals=intervals)


# Helper functions
async def _gather_tasks(coros: Iterable[Awaitable[Any]]) -> List[Any]:
    """Run ``coros`` concurrently; on the first failure cancel the rest and re-raise."""
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    if not tasks:
        return []
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


def _enabled_calendar_ids(
    account: Optional[CalendarAccount],
    calendar_ids: Iterable[str],
) -> List[str]:
    ids = list(dict.fromkeys(calendar_id for calendar_id in calendar_ids if calendar_id))
    if account is None or not account.sub_calendars:
        return ids
    # Sub-calendars switched off on the account are not fetched.
    return [
        calendar_id
        for calendar_id in ids
        if account.sub_calendars.get(calendar_id) is None or account.sub_calendars[calendar_id].enabled
    ]


def _manual_for_day(response: Response, day: TimeInterval) -> Optional[List[TimeInterval]]:
    """Manual intervals keyed by an instant inside ``day``, or None when there are none."""
    if response.manual_availability is None:
        return None
    matched = [
        intervals
        for day_start, intervals in response.manual_availability.items()
        if day.start <= day_start < day.end
    ]
    if not matched:
        return None
    return merge_intervals(interval for intervals in matched for interval in intervals)


def working_hours_span(day: TimeInterval, calendar_options: CalendarOptions) -> List[TimeInterval]:
    """The part of ``day`` inside working hours, or the whole day when they are off."""
    hours = calendar_options.working_hours
    if not hours.enabled:
        return [day]

    tz = calendar_options.tzinfo
    first_local = day.start.astimezone(tz).date() - timedelta(days=1)
    last_local = day.end.astimezone(tz).date()

    spans: List[TimeInterval] = []
    local_date = first_local
    while local_date <= last_local:
        midnight = datetime.combine(local_date, time.min, tzinfo=tz)
        start = midnight + timedelta(hours=hours.start_time)
        end = midnight + timedelta(hours=hours.end_time)
        if end <= start:
            end += timedelta(days=1)
        spans.append(
            TimeInterval(start=start.astimezone(timezone.utc), end=end.astimezone(timezone.utc))
        )
        local_date += timedelta(days=1)
    return clip_intervals(spans, day)
