"""
Calendar and contact tools
==========================

Each tool is a pydantic argument model (its JSON schema becomes the tool's
``inputSchema``) plus an async handler.  The ``caldav`` client is
synchronous, so handlers push every DAV round trip onto a worker thread with
``asyncio.to_thread`` and the event loop keeps serving other calls.

Results carry the JSON payload as ``structuredContent`` and, for simple
clients, the same JSON serialized into a text block.  Failures are raised;
the protocol layer turns them into error envelopes.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import functools
import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from caldav.lib.error import NotFoundError
from icalendar import Alarm as ICalendarAlarm
from icalendar import Calendar as ICalendarCalendar
from icalendar import Event as ICalendarEvent
from mcp import types
from pydantic import BaseModel, ConfigDict, Field
import vobject
from vobject.vcard import Name as VCardName

from dav_session import DavSessionProvider
from errors import HandlerExecutionError, InvalidParamsError
from tool_registry import ToolDescriptor, ToolRegistry

log = logging.getLogger("dav-mcp.dav")

PRODID = "-//dav-mcp//EN"


# ---------------------------------------------------------------------------
#  Result and date helpers
# ---------------------------------------------------------------------------

def _tool_result(payload: Dict[str, Any], *, text: Optional[str] = None) -> types.CallToolResult:
    """Create a result that keeps both summary text and JSON detail."""
    blocks: List[types.TextContent] = []
    if text:
        blocks.append(types.TextContent(type="text", text=text))
    blocks.append(types.TextContent(type="text", text=json.dumps(payload, indent=2, sort_keys=True, default=str)))
    return types.CallToolResult(content=blocks, structuredContent=payload)


def _parse_iso(s: str) -> dt.datetime:
    """
    Parse an ISO date/time string.  Accepts 'YYYY-MM-DDTHH:MM:SS', or
    the same suffixed with 'Z' (UTC) or an offset like '-05:00'.
    """
    try:
        if s.endswith('Z'):
            return dt.datetime.fromisoformat(s[:-1]).replace(tzinfo=dt.timezone.utc)
        return dt.datetime.fromisoformat(s)
    except ValueError as exc:
        raise InvalidParamsError(f"Invalid ISO datetime: {s!r}") from exc


def _check_span(start: Any, end: Any) -> None:
    """Reject an event whose end is not after its start."""
    if start is None or end is None:
        return
    if isinstance(start, dt.datetime) != isinstance(end, dt.datetime):
        raise InvalidParamsError("Event start and end must both be dates or both be datetimes")
    if isinstance(start, dt.datetime) and (start.tzinfo is None) != (end.tzinfo is None):
        raise InvalidParamsError("Event start and end must both carry a UTC offset or both omit it")
    if end <= start:
        raise InvalidParamsError("Event end must be after its start")


def _span_value(event: Any, field: str) -> Any:
    prop = event.get(field)
    if prop is None:
        return None
    value = prop.dt
    tzid = prop.params.get('TZID')
    # freshly added naive values keep their zone only as a TZID parameter
    if isinstance(value, dt.datetime) and value.tzinfo is None and tzid:
        try:
            value = value.replace(tzinfo=ZoneInfo(tzid))
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return value


def _to_iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


async def _blocking(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    if kwargs:
        return await asyncio.to_thread(functools.partial(func, **kwargs), *args)
    return await asyncio.to_thread(func, *args)


def _alarm(minutes_before: int) -> ICalendarAlarm:
    alarm = ICalendarAlarm()
    alarm.add('action', 'DISPLAY')
    alarm.add('description', 'Reminder')
    alarm.add('trigger', -dt.timedelta(minutes=abs(minutes_before)))
    return alarm


def _event_summary(component: Any) -> Dict[str, Any]:
    return {
        "uid": str(component.get('uid', '') or ''),
        "summary": str(component.get('summary', '') or ''),
        "start": _to_iso(component.decoded('dtstart', None)),
        "end": _to_iso(component.decoded('dtend', None)),
        "location": str(component.get('location', '') or '') or None,
    }


# ---------------------------------------------------------------------------
#  Argument models
# ---------------------------------------------------------------------------

class _Args(BaseModel):
    model_config = ConfigDict(extra="forbid")


class NoArgs(_Args):
    pass


class ListEventsArgs(_Args):
    calendar: str = Field(description="Calendar display name or absolute CalDAV URL.")
    start: str = Field(description="ISO datetime, inclusive start of the range.")
    end: str = Field(description="ISO datetime, exclusive end of the range.")
    expand_recurring: bool = Field(True, description="Expand recurring events into instances.")


class GetEventArgs(_Args):
    calendar: str = Field(description="Calendar display name or absolute CalDAV URL.")
    uid: str = Field(description="UID of the event.")


class CreateEventArgs(_Args):
    calendar: str = Field(description="Calendar display name or absolute CalDAV URL.")
    summary: str = Field(min_length=1, description="Event title.")
    start: str = Field(description="ISO datetime when the event begins.")
    end: str = Field(description="ISO datetime when the event ends.")
    tzid: Optional[str] = Field(None, description="IANA timezone for naive datetimes.")
    description: Optional[str] = None
    location: Optional[str] = None
    url: Optional[str] = None
    reminder_minutes: List[int] = Field(
        default_factory=list, description="Display reminders, in minutes before the start."
    )


class UpdateEventArgs(_Args):
    calendar: str = Field(description="Calendar display name or absolute CalDAV URL.")
    uid: str = Field(description="UID of the event to change.")
    summary: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    description: Optional[str] = Field(None, description="Empty string removes the field.")
    location: Optional[str] = Field(None, description="Empty string removes the field.")
    url: Optional[str] = Field(None, description="Empty string removes the field.")
    reminder_minutes: Optional[List[int]] = Field(
        None, description="Replaces all reminders; an empty list removes them, omitted keeps them."
    )


class ListContactsArgs(_Args):
    addressbook: Optional[str] = Field(
        None, description="Address book display name or URL; defaults to the first address book."
    )
    limit: int = Field(100, ge=1, le=1000)


class CreateContactArgs(_Args):
    addressbook: Optional[str] = Field(None, description="Address book display name or URL.")
    full_name: str = Field(min_length=1)
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    emails: List[str] = Field(default_factory=list)
    phones: List[str] = Field(default_factory=list)
    organization: Optional[str] = None


class DeleteContactArgs(_Args):
    url: str = Field(description="Absolute URL of the vCard resource (as returned by list_contacts).")


# ---------------------------------------------------------------------------
#  Tool bodies
# ---------------------------------------------------------------------------

class DavTools:
    """Tool handlers bound to one :class:`DavSessionProvider`."""

    def __init__(self, dav: DavSessionProvider, default_tzid: str = "UTC") -> None:
        self.dav = dav
        self.default_tzid = default_tzid

    # -- calendar helpers (run on worker threads) ---------------------------

    def _calendars(self) -> List[Any]:
        return list(self.dav.get_caldav_client().principal().calendars())

    def _resolve_calendar(self, name_or_url: str) -> Any:
        client = self.dav.get_caldav_client()
        for cal in client.principal().calendars():
            if getattr(cal, 'name', None) == name_or_url or str(cal.url) == name_or_url:
                return cal
        if "://" in name_or_url:
            return client.calendar(url=name_or_url)
        raise HandlerExecutionError(f"Calendar not found: {name_or_url}")

    def _event_by_uid(self, name_or_url: str, uid: str) -> Any:
        cal = self._resolve_calendar(name_or_url)
        try:
            return cal.event_by_uid(uid)
        except NotFoundError as exc:
            raise HandlerExecutionError(f"Event not found: {uid}") from exc

    # -- calendar tools -----------------------------------------------------

    async def list_calendars(self, _: NoArgs) -> types.CallToolResult:
        calendars = await _blocking(self._calendars)
        out = [
            {"name": getattr(cal, 'name', None), "url": str(cal.url), "id": getattr(cal, 'id', None)}
            for cal in calendars
        ]
        return _tool_result({"calendars": out}, text=f"{len(out)} calendar(s)")

    async def list_events(self, args: ListEventsArgs) -> types.CallToolResult:
        start, end = _parse_iso(args.start), _parse_iso(args.end)

        def _search() -> List[Dict[str, Any]]:
            cal = self._resolve_calendar(args.calendar)
            events = cal.search(event=True, start=start, end=end, expand=args.expand_recurring)
            return [dict(_event_summary(ev.component), raw=ev.data) for ev in events]

        out = await _blocking(_search)
        return _tool_result({"events": out}, text=f"{len(out)} event(s)")

    async def get_event(self, args: GetEventArgs) -> types.CallToolResult:
        def _fetch() -> Dict[str, Any]:
            event = self._event_by_uid(args.calendar, args.uid)
            if not getattr(event, 'data', None):
                event.load()
            return dict(_event_summary(event.component), url=str(event.url), raw=event.data)

        return _tool_result(await _blocking(_fetch))

    async def create_event(self, args: CreateEventArgs) -> types.CallToolResult:
        start, end = _parse_iso(args.start), _parse_iso(args.end)
        _check_span(start, end)
        tzid = args.tzid or self.default_tzid
        uid = os.urandom(16).hex() + "@dav-mcp"

        cal_component = ICalendarCalendar()
        cal_component.add('prodid', PRODID)
        cal_component.add('version', '2.0')
        event = ICalendarEvent()
        event.add('uid', uid)
        event.add('dtstamp', dt.datetime.now(dt.timezone.utc))
        event.add('summary', args.summary)
        event.add('dtstart', start)
        event.add('dtend', end)
        if start.tzinfo is None and tzid:
            event['DTSTART'].params['TZID'] = tzid
            event['DTEND'].params['TZID'] = tzid
        for field, value in (('description', args.description), ('location', args.location), ('url', args.url)):
            if value:
                event.add(field, value)
        for minutes in args.reminder_minutes:
            event.add_component(_alarm(minutes))
        cal_component.add_component(event)
        ics_data = cal_component.to_ical().decode()

        def _save() -> None:
            self._resolve_calendar(args.calendar).save_event(ics_data)

        await _blocking(_save)
        return _tool_result({"uid": uid, "created": True}, text=f"Created event {uid}")

    async def update_event(self, args: UpdateEventArgs) -> types.CallToolResult:
        def _update() -> None:
            target = self._event_by_uid(args.calendar, args.uid)
            calendar_component = ICalendarCalendar.from_ical(target.data)
            event = next(
                (c for c in calendar_component.walk('VEVENT') if str(c.get('uid', '')).strip() == args.uid),
                None,
            )
            if event is None:
                raise HandlerExecutionError(f"Event not found: {args.uid}")

            for field, value in (
                ('SUMMARY', args.summary),
                ('DESCRIPTION', args.description),
                ('LOCATION', args.location),
                ('URL', args.url),
            ):
                if value is None:
                    continue
                event.pop(field, None)
                if value != "":
                    event.add(field.lower(), value)

            for field, candidate in (('DTSTART', args.start), ('DTEND', args.end)):
                if candidate is None:
                    continue
                previous_tzid = event[field].params.get('TZID') if field in event else None
                event.pop(field, None)
                event.add(field.lower(), _parse_iso(candidate))
                if previous_tzid and _parse_iso(candidate).tzinfo is None:
                    event[field].params['TZID'] = previous_tzid

            if args.start is not None or args.end is not None:
                _check_span(_span_value(event, 'DTSTART'), _span_value(event, 'DTEND'))

            if args.reminder_minutes is not None:
                event.subcomponents = [
                    c for c in event.subcomponents if getattr(c, 'name', '').upper() != 'VALARM'
                ]
                for minutes in args.reminder_minutes:
                    event.add_component(_alarm(minutes))

            target.data = calendar_component.to_ical().decode()
            target.save()

        await _blocking(_update)
        return _tool_result({"uid": args.uid, "success": True})

    async def delete_event(self, args: GetEventArgs) -> types.CallToolResult:
        def _delete() -> None:
            self._event_by_uid(args.calendar, args.uid).delete()

        await _blocking(_delete)
        return _tool_result({"uid": args.uid, "success": True})

    # -- contact tools ------------------------------------------------------

    def _resolve_addressbook(self, name_or_url: Optional[str]) -> str:
        books = self.dav.get_carddav_client().addressbooks()
        if name_or_url is None:
            if not books:
                raise HandlerExecutionError("No address books found for this account")
            return books[0].url
        for book in books:
            if book.name == name_or_url or book.url == name_or_url:
                return book.url
        if "://" in name_or_url:
            return name_or_url
        raise HandlerExecutionError(f"Address book not found: {name_or_url}")

    async def list_addressbooks(self, _: NoArgs) -> types.CallToolResult:
        books = await _blocking(lambda: self.dav.get_carddav_client().addressbooks())
        out = [{"name": b.name, "url": b.url} for b in books]
        return _tool_result({"addressbooks": out}, text=f"{len(out)} address book(s)")

    async def list_contacts(self, args: ListContactsArgs) -> types.CallToolResult:
        def _fetch() -> List[Dict[str, Any]]:
            url = self._resolve_addressbook(args.addressbook)
            contacts: List[Dict[str, Any]] = []
            for resource in self.dav.get_carddav_client().vcards(url)[: args.limit]:
                try:
                    contacts.append(dict(_contact_summary(resource.data), url=resource.url, etag=resource.etag))
                except Exception as exc:  # noqa: BLE001 - one broken card must not hide the rest
                    log.warning("Skipping unparsable vCard %s: %s", resource.url, exc)
            return contacts

        out = await _blocking(_fetch)
        return _tool_result({"contacts": out}, text=f"{len(out)} contact(s)")

    async def create_contact(self, args: CreateContactArgs) -> types.CallToolResult:
        uid = os.urandom(16).hex()
        card = vobject.vCard()
        card.add('uid').value = uid
        card.add('fn').value = args.full_name
        card.add('n').value = VCardName(family=args.family_name or "", given=args.given_name or "")
        for address in args.emails:
            card.add('email').value = address
        for number in args.phones:
            card.add('tel').value = number
        if args.organization:
            card.add('org').value = [args.organization]
        data = card.serialize()

        def _save() -> str:
            url = self._resolve_addressbook(args.addressbook).rstrip('/') + f"/{uid}.vcf"
            self.dav.get_carddav_client().put_vcard(url, data)
            return url

        url = await _blocking(_save)
        return _tool_result({"uid": uid, "url": url, "created": True}, text=f"Created contact {args.full_name}")

    async def delete_contact(self, args: DeleteContactArgs) -> types.CallToolResult:
        await _blocking(lambda: self.dav.get_carddav_client().delete(args.url))
        return _tool_result({"url": args.url, "success": True})


def _contact_summary(data: str) -> Dict[str, Any]:
    card = vobject.readOne(data)

    def values(name: str) -> List[Any]:
        return [line.value for line in card.contents.get(name, [])]

    names = values('fn')
    uids = values('uid')
    orgs = values('org')
    return {
        "uid": uids[0] if uids else None,
        "name": names[0] if names else None,
        "emails": [str(v) for v in values('email')],
        "phones": [str(v) for v in values('tel')],
        "organization": " ".join(orgs[0]) if orgs and isinstance(orgs[0], list) else (orgs[0] if orgs else None),
    }


# ---------------------------------------------------------------------------
#  Registry
# ---------------------------------------------------------------------------

def _descriptor(
    name: str,
    description: str,
    model: Type[_Args],
    body: Callable[[Any], Awaitable[types.CallToolResult]],
) -> ToolDescriptor:
    async def handler(arguments: Dict[str, Any]) -> types.CallToolResult:
        # pydantic ValidationError surfaces as an invalid-params envelope
        return await body(model.model_validate(arguments))

    return ToolDescriptor(name=name, description=description, input_schema=model.model_json_schema(), handler=handler)


def build_registry(dav: DavSessionProvider, default_tzid: str = "UTC") -> ToolRegistry:
    """Build the static tool registry, in the order tools are listed to clients."""
    t = DavTools(dav, default_tzid=default_tzid)
    return ToolRegistry([
        _descriptor("list_calendars", "List all calendars of the account with their names and URLs.",
                    NoArgs, t.list_calendars),
        _descriptor("list_events", "List events of a calendar between two ISO datetimes.",
                    ListEventsArgs, t.list_events),
        _descriptor("get_event", "Fetch one event, including its raw iCalendar data, by UID.",
                    GetEventArgs, t.get_event),
        _descriptor("create_event", "Create a calendar event and return its UID.",
                    CreateEventArgs, t.create_event),
        _descriptor("update_event", "Update fields of an existing event; omitted fields are kept.",
                    UpdateEventArgs, t.update_event),
        _descriptor("delete_event", "Delete an event by UID.",
                    GetEventArgs, t.delete_event),
        _descriptor("list_addressbooks", "List all CardDAV address books of the account.",
                    NoArgs, t.list_addressbooks),
        _descriptor("list_contacts", "List contacts of an address book.",
                    ListContactsArgs, t.list_contacts),
        _descriptor("create_contact", "Create a contact (vCard) in an address book.",
                    CreateContactArgs, t.create_contact),
        _descriptor("delete_contact", "Delete a contact by its vCard URL.",
                    DeleteContactArgs, t.delete_contact),
    ])
