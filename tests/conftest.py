import asyncio
import datetime as dt
from typing import Any, Dict, List, Optional

import pytest
from caldav.lib.error import NotFoundError
from icalendar import Alarm, Calendar, Event

from carddav import AddressBook, VCardResource
from dav_session import DavSessionProvider
from protocol_server import ServerContext, bootstrap
from settings import BasicDavConfig, OAuthDavConfig, Settings
from tool_call_logger import ToolCallEvent, ToolCallLogger

BEARER = "test-bearer-token-0123456789"

SAMPLE_VCARD = (
    "BEGIN:VCARD\r\n"
    "VERSION:3.0\r\n"
    "UID:contact-1\r\n"
    "FN:Ada Lovelace\r\n"
    "N:Lovelace;Ada;;;\r\n"
    "EMAIL;TYPE=INTERNET:ada@example.com\r\n"
    "TEL:+44 20 7946 0000\r\n"
    "ORG:Analytical Engines\r\n"
    "END:VCARD\r\n"
)


class FakeEvent:
    def __init__(self, uid: str = "event-123") -> None:
        start = dt.datetime(2024, 1, 1, 13, 0, tzinfo=dt.timezone.utc)
        end = start + dt.timedelta(hours=1)
        calendar = Calendar()
        calendar.add('prodid', '-//Tests//EN')
        calendar.add('version', '2.0')
        event = Event()
        event.add('uid', uid)
        event.add('summary', 'Sprint Planning')
        event.add('description', 'Discuss upcoming work')
        event.add('dtstart', start)
        event.add('dtend', end)
        alarm = Alarm()
        alarm.add('action', 'DISPLAY')
        alarm.add('description', 'Initial Reminder')
        alarm.add('trigger', dt.timedelta(minutes=-30))
        event.add_component(alarm)
        calendar.add_component(event)
        self.data = calendar.to_ical().decode()
        self.url = f"https://dav.example.com/cal/work/{uid}.ics"
        self.saved = False
        self.deleted = False

    @property
    def component(self):
        cal = Calendar.from_ical(self.data)
        for comp in cal.walk('VEVENT'):
            return comp
        raise AssertionError("No VEVENT in fake event")

    def load(self) -> "FakeEvent":
        return self

    def save(self) -> None:
        self.saved = True

    def delete(self) -> None:
        self.deleted = True


class FakeCalendar:
    def __init__(self) -> None:
        self.name = "Work"
        self.url = "https://dav.example.com/cal/work/"
        self.id = "work"
        self.saved_events: List[str] = []
        self.event = FakeEvent()
        self.search_calls: List[Dict[str, Any]] = []

    def search(self, *args: Any, **kwargs: Any) -> List[FakeEvent]:
        self.search_calls.append(kwargs)
        return [self.event]

    def save_event(self, ics_data: str) -> None:
        self.saved_events.append(ics_data)

    def event_by_uid(self, uid: str) -> FakeEvent:
        if uid != str(self.event.component.get('uid')):
            raise NotFoundError(uid)
        return self.event


class FakePrincipal:
    def __init__(self, calendars: List[FakeCalendar]) -> None:
        self._calendars = calendars

    def calendars(self) -> List[FakeCalendar]:
        return list(self._calendars)


class FakeCalDavClient:
    def __init__(self, fail_login: bool = False) -> None:
        self.fail_login = fail_login
        self.calendar_obj = FakeCalendar()
        self.principal_calls = 0

    def principal(self) -> FakePrincipal:
        self.principal_calls += 1
        if self.fail_login:
            raise ConnectionError("caldav login refused")
        return FakePrincipal([self.calendar_obj])

    def calendar(self, url: str) -> FakeCalendar:
        return self.calendar_obj


class FakeCardDavClient:
    def __init__(self, fail_login: bool = False) -> None:
        self.fail_login = fail_login
        self.logged_in = False
        self.book = AddressBook(url="https://dav.example.com/card/contacts/", name="Contacts")
        self.cards = [VCardResource(url=self.book.url + "contact-1.vcf", etag='"1"', data=SAMPLE_VCARD)]
        self.put_calls: List[Dict[str, str]] = []
        self.deleted: List[str] = []

    def login(self) -> None:
        if self.fail_login:
            raise ConnectionError("carddav not supported")
        self.logged_in = True

    def addressbooks(self) -> List[AddressBook]:
        return [self.book]

    def vcards(self, url: str) -> List[VCardResource]:
        return list(self.cards)

    def put_vcard(self, url: str, data: str) -> None:
        self.put_calls.append({"url": url, "data": data})

    def delete(self, url: str) -> None:
        self.deleted.append(url)


def make_provider(
    caldav: Optional[FakeCalDavClient] = None,
    carddav: Optional[FakeCardDavClient] = None,
    created: Optional[List[str]] = None,
) -> DavSessionProvider:
    caldav = caldav or FakeCalDavClient()
    carddav = carddav or FakeCardDavClient()

    def caldav_factory(config, url, auth):
        if created is not None:
            created.append(f"caldav:{url}")
        return caldav

    def carddav_factory(config, url, auth):
        if created is not None:
            created.append(f"carddav:{url}")
        return carddav

    return DavSessionProvider(caldav_factory=caldav_factory, carddav_factory=carddav_factory)


def basic_config(**overrides: Any) -> BasicDavConfig:
    values = dict(server_url="https://dav.example.com/", username="alice", password="s3cret")
    values.update(overrides)
    return BasicDavConfig(**values)


def oauth_config(**overrides: Any) -> OAuthDavConfig:
    values = dict(
        server_url="https://apidata.googleusercontent.com/caldav/v2/",
        username="alice@example.com",
        client_id="client-id",
        client_secret="client-secret",
        refresh_token="refresh-token",
    )
    values.update(overrides)
    return OAuthDavConfig(**values)


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(dav=basic_config(), bearer_token=BEARER)
    values.update(overrides)
    return Settings(**values)


@pytest.fixture()
def caldav_client() -> FakeCalDavClient:
    return FakeCalDavClient()


@pytest.fixture()
def carddav_client() -> FakeCardDavClient:
    return FakeCardDavClient()


@pytest.fixture()
def events() -> List[ToolCallEvent]:
    return []


@pytest.fixture()
def context(
    caldav_client: FakeCalDavClient, carddav_client: FakeCardDavClient, events: List[ToolCallEvent]
) -> ServerContext:
    provider = make_provider(caldav_client, carddav_client)
    return asyncio.run(bootstrap(make_settings(), dav=provider, tool_logger=ToolCallLogger(sink=events.append)))
