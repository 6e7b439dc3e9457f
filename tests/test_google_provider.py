"""Tests for the Google Calendar provider."""

from urllib.parse import parse_qs

import httpx
import pytest
from conftest import make_google_account, token_response, utc

from schej.domains.calendars.providers.google import (
    GoogleCalendarProvider,
    GoogleEventV3,
    format_rfc3339,
    refresh_access_token,
)
from schej.domains.calendars.schemas import CalendarEvent
from schej.utils.errors import (
    AuthExpiredError,
    MalformedResponseError,
    ProviderRequestError,
    ProviderUnavailableError,
)


def google_event(summary, start, end, **extra):
    return {"summary": summary, "start": {"dateTime": start}, "end": {"dateTime": end}, **extra}


def provider_for(handler, settings, account=None):
    account = account or make_google_account()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GoogleCalendarProvider(account.google_calendar_auth, client, settings=settings), client


class TestGoogleEventDecoding:
    """Tests for GoogleEventV3."""

    def test_offset_datetimes_are_converted_to_utc(self):
        event = GoogleEventV3.model_validate(
            google_event("Standup", "2024-05-06T09:00:00-04:00", "2024-05-06T09:30:00-04:00")
        )

        [canonical] = event.to_canonical()

        assert canonical.summary == "Standup"
        assert canonical.start_date == utc(2024, 5, 6, 13)
        assert canonical.end_date == utc(2024, 5, 6, 13, 30)
        assert canonical.all_day is False

    def test_floating_datetime_uses_event_time_zone(self):
        event = GoogleEventV3.model_validate(
            {
                "summary": "Call",
                "start": {"dateTime": "2024-01-15T09:00:00", "timeZone": "America/New_York"},
                "end": {"dateTime": "2024-01-15T10:00:00", "timeZone": "America/New_York"},
            }
        )

        [canonical] = event.to_canonical()

        assert canonical.start_date == utc(2024, 1, 15, 14)
        assert canonical.end_date == utc(2024, 1, 15, 15)

    def test_all_day_event(self):
        event = GoogleEventV3.model_validate(
            {"summary": "Offsite", "start": {"date": "2024-05-06"}, "end": {"date": "2024-05-07"}}
        )

        [canonical] = event.to_canonical()

        assert canonical.all_day is True
        assert canonical.start_date == utc(2024, 5, 6)
        assert canonical.end_date == utc(2024, 5, 7)

    def test_cancelled_event_decodes_to_nothing(self):
        event = GoogleEventV3.model_validate(
            google_event("Gone", "2024-05-06T09:00:00Z", "2024-05-06T10:00:00Z", status="cancelled")
        )

        assert event.to_canonical() == []

    @pytest.mark.asyncio
    async def test_zero_length_event_is_dropped_not_malformed(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "items": [
                        google_event("Standup", "2024-05-06T09:00:00Z", "2024-05-06T09:30:00Z"),
                        google_event("Marker", "2024-05-06T12:00:00Z", "2024-05-06T12:00:00Z"),
                    ]
                },
            )

        provider, client = provider_for(handler, settings)
        async with client:
            listing = await provider.list_events("primary", utc(2024, 5, 6), utc(2024, 5, 7))

        assert [event.summary for event in listing] == ["Standup"]
        assert listing.malformed == []

    def test_canonical_event_survives_encode_and_decode(self):
        original = CalendarEvent(
            summary="Review",
            start_date=utc(2024, 5, 6, 15),
            end_date=utc(2024, 5, 6, 16, 30),
        )

        payload = GoogleEventV3.from_canonical(original).to_payload()

        assert payload["start"]["timeZone"] == "UTC"
        assert GoogleEventV3.model_validate(payload).to_canonical() == [original]

    def test_all_day_canonical_event_encodes_dates(self):
        original = CalendarEvent(
            summary="Holiday",
            start_date=utc(2024, 5, 6),
            end_date=utc(2024, 5, 7),
            all_day=True,
        )

        payload = GoogleEventV3.from_canonical(original).to_payload()

        assert payload["start"] == {"date": "2024-05-06"}
        assert GoogleEventV3.model_validate(payload).to_canonical() == [original]

    @pytest.mark.parametrize(
        "item",
        [
            {"summary": "no times"},
            {"start": {}, "end": {}},
            google_event("backwards", "2024-05-06T10:00:00Z", "2024-05-06T09:00:00Z"),
            {"start": {"dateTime": "2024-05-06T09:00:00", "timeZone": "Not/AZone"}, "end": {"dateTime": "2024-05-06T10:00:00"}},
            "not an object",
        ],
    )
    def test_invalid_items_raise_malformed_response(self, item, settings):
        provider = GoogleCalendarProvider(
            make_google_account().google_calendar_auth,
            httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500))),
            settings=settings,
        )

        with pytest.raises(MalformedResponseError):
            provider.decode_event_item(item)


class TestGoogleCalendarProvider:
    """Tests for GoogleCalendarProvider HTTP behaviour."""

    @pytest.mark.asyncio
    async def test_list_events_paginates_and_filters(self, settings):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if "pageToken" not in request.url.params:
                return httpx.Response(
                    200,
                    json={
                        "items": [
                            google_event("Standup", "2024-05-06T09:00:00Z", "2024-05-06T09:30:00Z"),
                            google_event("Touches start", "2024-05-06T00:00:00Z", "2024-05-06T01:00:00Z"),
                        ],
                        "nextPageToken": "page-2",
                    },
                )
            return httpx.Response(
                200,
                json={"items": [{"summary": "broken"}, google_event("Lunch", "2024-05-06T12:00:00Z", "2024-05-06T13:00:00Z")]},
            )

        provider, client = provider_for(handler, settings)
        async with client:
            listing = await provider.list_events(
                "team@group.calendar.google.com", utc(2024, 5, 6), utc(2024, 5, 7)
            )

        assert [event.summary for event in listing] == ["Standup", "Lunch"]
        assert [item.index for item in listing.malformed] == [2]
        assert len(requests) == 2
        first = requests[0]
        assert first.headers["Authorization"] == "Bearer ya29.test-access-token"
        assert first.url.path.endswith("/calendars/team@group.calendar.google.com/events")
        assert first.url.params["timeMin"] == "2024-05-06T00:00:00Z"
        assert first.url.params["timeMax"] == "2024-05-07T00:00:00Z"
        assert first.url.params["singleEvents"] == "true"
        assert requests[1].url.params["pageToken"] == "page-2"

    @pytest.mark.asyncio
    async def test_list_calendars_skips_malformed_entries(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("/users/me/calendarList")
            assert request.url.params["minAccessRole"] == "reader"
            return httpx.Response(
                200,
                json={
                    "items": [
                        {"id": "test@example.com", "summary": "test@example.com", "primary": True},
                        {"id": "team@group.calendar.google.com", "summary": "Team", "summaryOverride": "My Team"},
                        {"summary": "no id"},
                    ]
                },
            )

        provider, client = provider_for(handler, settings)
        async with client:
            calendars = await provider.list_calendars()

        assert set(calendars) == {"test@example.com", "team@group.calendar.google.com"}
        assert calendars["test@example.com"].primary is True
        assert calendars["team@group.calendar.google.com"].name == "My Team"

    @pytest.mark.asyncio
    async def test_unauthorized_is_not_retried(self, settings):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(401, json={"error": {"message": "Invalid Credentials"}})

        provider, client = provider_for(handler, settings)
        async with client:
            with pytest.raises(ProviderRequestError) as exc_info:
                await provider.list_events("primary", utc(2024, 5, 6), utc(2024, 5, 7))

        assert exc_info.value.response_status == 401
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried_once(self, settings):
        responses = [httpx.Response(503), httpx.Response(200, json={"items": []})]

        def handler(request: httpx.Request) -> httpx.Response:
            return responses.pop(0)

        provider, client = provider_for(handler, settings)
        async with client:
            listing = await provider.list_events("primary", utc(2024, 5, 6), utc(2024, 5, 7))

        assert len(listing) == 0
        assert responses == []

    @pytest.mark.asyncio
    async def test_repeated_transport_errors_raise_provider_unavailable(self, settings):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        provider, client = provider_for(handler, settings)
        async with client:
            with pytest.raises(ProviderUnavailableError):
                await provider.list_events("primary", utc(2024, 5, 6), utc(2024, 5, 7))

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_invalid_json_is_malformed(self, settings):
        provider, client = provider_for(lambda request: httpx.Response(200, text="<html>"), settings)
        async with client:
            with pytest.raises(MalformedResponseError):
                await provider.list_events("primary", utc(2024, 5, 6), utc(2024, 5, 7))


class TestRefreshAccessToken:
    """Tests for refresh_access_token."""

    @pytest.mark.asyncio
    async def test_successful_refresh(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode())
            return token_response("ya29.new", expires_in=3600)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            tokens = await refresh_access_token(client, "refresh-abc", settings=settings)

        assert tokens.access_token == "ya29.new"
        assert tokens.expires_at(utc(2024, 5, 6)) == utc(2024, 5, 6, 1)
        assert seen["url"] == settings.google_token_endpoint
        assert seen["form"]["grant_type"] == ["refresh_token"]
        assert seen["form"]["refresh_token"] == ["refresh-abc"]
        assert seen["form"]["client_id"] == ["test-client-id"]

    @pytest.mark.asyncio
    async def test_invalid_grant_raises_auth_expired(self, settings):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": "invalid_grant"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(AuthExpiredError, match="invalid_grant"):
                await refresh_access_token(client, "refresh-abc", settings=settings)

    @pytest.mark.asyncio
    async def test_server_errors_raise_provider_unavailable(self, settings):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProviderUnavailableError):
                await refresh_access_token(client, "refresh-abc", settings=settings)

        assert len(calls) == 2


def test_format_rfc3339_uses_z_suffix():
    assert format_rfc3339(utc(2024, 5, 6, 9, 30)) == "2024-05-06T09:30:00Z"
