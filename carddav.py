"""
Minimal CardDAV client built on the ``caldav`` WebDAV transport.

The ``caldav`` package speaks WebDAV and CalDAV but has no address book
support.  :class:`CardDavClient` reuses its :class:`~caldav.davclient.DAVClient`
for authentication and HTTP, and adds the few CardDAV requests the contact
tools need (RFC 6352): address book discovery, an ``addressbook-query``
report, and PUT/DELETE of vCard resources.
"""

from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urljoin

log = logging.getLogger("dav-mcp.dav")

DAV_NS = "DAV:"
CARDDAV_NS = "urn:ietf:params:xml:ns:carddav"

_PRINCIPAL_QUERY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:"><d:prop><d:current-user-principal/></d:prop></d:propfind>"""

_HOME_SET_QUERY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:" xmlns:card="urn:ietf:params:xml:ns:carddav">
<d:prop><card:addressbook-home-set/></d:prop></d:propfind>"""

_COLLECTIONS_QUERY = """<?xml version="1.0" encoding="utf-8"?>
<d:propfind xmlns:d="DAV:"><d:prop><d:resourcetype/><d:displayname/></d:prop></d:propfind>"""

_ADDRESSBOOK_QUERY = """<?xml version="1.0" encoding="utf-8"?>
<card:addressbook-query xmlns:d="DAV:" xmlns:card="urn:ietf:params:xml:ns:carddav">
<d:prop><d:getetag/><card:address-data/></d:prop></card:addressbook-query>"""


class CardDavError(Exception):
    """A CardDAV request returned an unexpected status or body."""


@dataclass(frozen=True)
class AddressBook:
    url: str
    name: Optional[str]


@dataclass(frozen=True)
class VCardResource:
    url: str
    etag: Optional[str]
    data: str


def _tag(ns: str, name: str) -> str:
    return f"{{{ns}}}{name}"


def _parse_multistatus(raw: Any) -> List[Tuple[str, Dict[str, ET.Element]]]:
    """Return ``(href, {prop tag: element})`` pairs for successful propstats."""
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    try:
        root = ET.fromstring(raw)
    except ET.ParseError as exc:
        raise CardDavError(f"Malformed multistatus response: {exc}") from exc
    results: List[Tuple[str, Dict[str, ET.Element]]] = []
    for response in root.findall(_tag(DAV_NS, "response")):
        href = (response.findtext(_tag(DAV_NS, "href")) or "").strip()
        props: Dict[str, ET.Element] = {}
        for propstat in response.findall(_tag(DAV_NS, "propstat")):
            status = propstat.findtext(_tag(DAV_NS, "status")) or ""
            if " 200 " not in f"{status} ":
                continue
            prop = propstat.find(_tag(DAV_NS, "prop"))
            if prop is None:
                continue
            for child in prop:
                props[child.tag] = child
        results.append((href, props))
    return results


def _href_of(element: Optional[ET.Element]) -> Optional[str]:
    if element is None:
        return None
    href = element.findtext(_tag(DAV_NS, "href"))
    return href.strip() if href else None


class CardDavClient:
    """
    CardDAV operations on top of a ``caldav`` DAVClient.

    ``login`` performs principal and address-book-home discovery and must
    succeed before any other call.
    """

    def __init__(self, dav_client: Any) -> None:
        self._dav = dav_client
        self._base_url = str(dav_client.url)
        self.home_url: Optional[str] = None

    def _url(self, href: str) -> str:
        return urljoin(self._base_url, href)

    def _propfind(self, url: str, body: str, depth: int) -> List[Tuple[str, Dict[str, ET.Element]]]:
        response = self._dav.propfind(url, body, depth)
        if response.status not in (200, 207):
            raise CardDavError(f"PROPFIND {url} failed with status {response.status}")
        return _parse_multistatus(response.raw)

    def login(self) -> None:
        principal_href = None
        for _, props in self._propfind(self._base_url, _PRINCIPAL_QUERY, 0):
            principal_href = _href_of(props.get(_tag(DAV_NS, "current-user-principal")))
            if principal_href:
                break
        if not principal_href:
            raise CardDavError("Server did not report a current-user-principal")

        principal_url = self._url(principal_href)
        home_href = None
        for _, props in self._propfind(principal_url, _HOME_SET_QUERY, 0):
            home_href = _href_of(props.get(_tag(CARDDAV_NS, "addressbook-home-set")))
            if home_href:
                break
        # Some servers keep address books directly under the principal.
        self.home_url = self._url(home_href) if home_href else principal_url
        log.debug("CardDAV address book home: %s", self.home_url)

    def addressbooks(self) -> List[AddressBook]:
        if self.home_url is None:
            raise CardDavError("CardDAV client is not logged in")
        books: List[AddressBook] = []
        for href, props in self._propfind(self.home_url, _COLLECTIONS_QUERY, 1):
            resourcetype = props.get(_tag(DAV_NS, "resourcetype"))
            if resourcetype is None or resourcetype.find(_tag(CARDDAV_NS, "addressbook")) is None:
                continue
            name_el = props.get(_tag(DAV_NS, "displayname"))
            name = name_el.text.strip() if name_el is not None and name_el.text else None
            books.append(AddressBook(url=self._url(href), name=name))
        return books

    def vcards(self, addressbook_url: str) -> List[VCardResource]:
        response = self._dav.report(addressbook_url, _ADDRESSBOOK_QUERY, 1)
        if response.status not in (200, 207):
            raise CardDavError(f"REPORT {addressbook_url} failed with status {response.status}")
        cards: List[VCardResource] = []
        for href, props in _parse_multistatus(response.raw):
            data_el = props.get(_tag(CARDDAV_NS, "address-data"))
            if data_el is None or not data_el.text:
                continue
            etag_el = props.get(_tag(DAV_NS, "getetag"))
            cards.append(
                VCardResource(
                    url=self._url(href),
                    etag=etag_el.text.strip() if etag_el is not None and etag_el.text else None,
                    data=data_el.text,
                )
            )
        return cards

    def put_vcard(self, url: str, data: str) -> None:
        response = self._dav.put(
            url,
            data,
            {"Content-Type": "text/vcard; charset=utf-8", "If-None-Match": "*"},
        )
        if response.status not in (200, 201, 204):
            raise CardDavError(f"PUT {url} failed with status {response.status}")

    def delete(self, url: str) -> None:
        response = self._dav.delete(url)
        if response.status not in (200, 204):
            raise CardDavError(f"DELETE {url} failed with status {response.status}")
