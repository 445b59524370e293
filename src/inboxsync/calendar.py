"""Summary: Calendar provider interface and Google Calendar implementation.

Importance: Supplies busy intervals to the availability engine and creates accepted events.
Alternatives: Use the provider free/busy endpoint or a calendar SDK.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from inboxsync.models import BusyInterval, parse_iso, to_iso
from inboxsync.transport import request_json


logger = logging.getLogger(__name__)


class CalendarClient(ABC):
    """Summary: Abstract interface for calendar reads and writes.

    Importance: Lets services take an injected client so tests can substitute fakes.
    Alternatives: Couple services to a single calendar API.
    """

    @abstractmethod
    def list_busy_intervals(self, time_min: datetime, time_max: datetime) -> list[BusyInterval]:
        """Summary: Return timed events overlapping the window as busy intervals.

        Importance: Drives conflict detection for slot suggestions.
        Alternatives: Fetch events by a fixed limit instead of a date range.
        """

    @abstractmethod
    def create_event(
        self,
        title: str,
        start: datetime,
        end: datetime,
        timezone_name: str,
        description: str = "",
        attendee_email: str | None = None,
    ) -> dict[str, Any]:
        """Create an event and return the provider payload."""


class GoogleCalendarClient(CalendarClient):
    """Summary: Calendar v3 REST client for the primary calendar.

    Importance: Constructed per request from a freshly resolved access token.
    Alternatives: Share a process-wide client and swap tokens.
    """

    def __init__(self, access_token: str, base_url: str, timeout: float = 10.0) -> None:
        self._access_token = access_token
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def list_busy_intervals(self, time_min: datetime, time_max: datetime) -> list[BusyInterval]:
        intervals: list[BusyInterval] = []
        page_token: str | None = None
        while True:
            payload = request_json(
                "GET",
                f"{self._base_url}/calendars/primary/events",
                provider="calendar",
                timeout=self._timeout,
                access_token=self._access_token,
                params={
                    "timeMin": to_iso(time_min),
                    "timeMax": to_iso(time_max),
                    "singleEvents": "true",
                    "orderBy": "startTime",
                    "pageToken": page_token,
                },
            )
            intervals.extend(parse_busy_intervals(payload.get("items", [])))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return intervals

    def create_event(
        self,
        title: str,
        start: datetime,
        end: datetime,
        timezone_name: str,
        description: str = "",
        attendee_email: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "summary": title,
            "description": description,
            "start": {"dateTime": to_iso(start), "timeZone": timezone_name},
            "end": {"dateTime": to_iso(end), "timeZone": timezone_name},
            "reminders": {"useDefault": True},
        }
        params = None
        if attendee_email:
            body["attendees"] = [{"email": attendee_email}]
            params = {"sendUpdates": "all"}
        return request_json(
            "POST",
            f"{self._base_url}/calendars/primary/events",
            provider="calendar",
            timeout=self._timeout,
            access_token=self._access_token,
            params=params,
            json_body=body,
        )


def parse_busy_intervals(items: list[dict[str, Any]]) -> list[BusyInterval]:
    """Summary: Convert calendar event items into busy intervals.

    Importance: All-day and cancelled events are ignored; malformed ones are skipped.
    Alternatives: Treat all-day events as blocking the whole working day.
    """

    intervals: list[BusyInterval] = []
    for item in items:
        if item.get("status") == "cancelled":
            continue
        start_raw = (item.get("start") or {}).get("dateTime")
        end_raw = (item.get("end") or {}).get("dateTime")
        if not start_raw or not end_raw:
            continue
        try:
            intervals.append(BusyInterval(start=parse_iso(start_raw), end=parse_iso(end_raw)))
        except ValueError:
            logger.warning("Skipping calendar event %s with invalid times.", item.get("id"))
    return intervals
