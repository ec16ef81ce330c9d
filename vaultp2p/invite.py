"""Invite links carrying the room identity and key out-of-band.

The key travels in the URL fragment, which browsers and HTTP clients never
send to a server, so the rendezvous service never observes it.
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import parse_qs, quote, unquote, urlencode, urlsplit, urlunsplit


@dataclass(frozen=True)
class Invitation:
    room_identity: str
    key_material: str


def build_invite(base_url: str, room_identity: str, key_material: str) -> str:
    parts = urlsplit(base_url)
    query = parse_qs(parts.query, keep_blank_values=True)
    query["room"] = [room_identity]
    return urlunsplit(
        (
            parts.scheme,
            parts.netloc,
            parts.path or "/",
            urlencode(query, doseq=True),
            quote(key_material, safe=""),
        )
    )


def parse_invite(url: str) -> Invitation:
    parts = urlsplit(str(url).strip())
    rooms = parse_qs(parts.query).get("room") or []
    room = rooms[0].strip() if rooms else ""
    if not room:
        raise ValueError("invite link has no room identity")
    key = unquote(parts.fragment).strip()
    if not key:
        raise ValueError("invite link has no key")
    return Invitation(room_identity=room, key_material=key)
