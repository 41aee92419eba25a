from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from .constants import BROADCAST_SUFFIX, S_WHATSAPP_NET
from .exceptions import EmptyMessageError

MediaKind = Literal["image", "video", "audio", "document"]

_NON_DIGITS = re.compile(r"\D+")


def number_to_jid(phone_or_jid: str) -> str:
    """`+1 555-0100` -> `15550100@s.whatsapp.net`; full JIDs pass through."""

    if "@" in phone_or_jid:
        return phone_or_jid
    user = _NON_DIGITS.sub("", phone_or_jid)
    if not user:
        raise ValueError(f"not a phone number: {phone_or_jid!r}")
    return f"{user}{S_WHATSAPP_NET}"


def jid_to_number(jid_or_phone: str | None) -> str:
    if not jid_or_phone:
        return ""
    if "@" not in jid_or_phone:
        return jid_or_phone
    user = jid_or_phone.split("@", 1)[0]
    # Strip the agent/device suffix of a device JID (`user_agent:device@server`).
    return user.split(":", 1)[0].split("_", 1)[0]


def is_broadcast(jid: str | None) -> bool:
    return bool(jid and jid.endswith(BROADCAST_SUFFIX))


def field(obj: Any, name: str) -> Any:
    """Read `name` from a mapping or an attribute-style (proto) object."""

    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(name)
    return getattr(obj, name, None)


@dataclass(slots=True)
class OutgoingMessage:
    """A normalized outbound payload: transport content plus a loggable text."""

    content: dict[str, Any]
    text: str
    kind: str = "text"


def normalize_outgoing(payload: str | Mapping[str, Any]) -> OutgoingMessage:
    """
    Turn a caller payload into transport content.

    Accepts a plain string or a mapping with `type` in text/image/video/audio/
    document. Raises `EmptyMessageError` when nothing would be sent.
    """

    if isinstance(payload, str):
        if not payload.strip():
            raise EmptyMessageError()
        return OutgoingMessage(content={"text": payload}, text=payload)

    if not isinstance(payload, Mapping):
        raise TypeError(f"unsupported payload type: {type(payload).__name__}")

    kind = payload.get("type", "text")
    if kind == "text":
        text = payload.get("text") or ""
        if not str(text).strip():
            raise EmptyMessageError()
        return OutgoingMessage(content={"text": text}, text=text)

    if kind in ("image", "video", "audio", "document"):
        data = payload.get("data")
        if not data:
            raise EmptyMessageError(f"Empty {kind} payload")
        caption = payload.get("caption")
        content: dict[str, Any] = {kind: data}
        if payload.get("mimetype"):
            content["mimetype"] = payload["mimetype"]

        if kind == "document":
            file_name = payload.get("fileName") or payload.get("file_name")
            if not file_name:
                raise ValueError("document payload requires a file name")
            content["fileName"] = file_name
            if caption:
                content["caption"] = caption
            return OutgoingMessage(content=content, text=caption or file_name, kind=kind)

        if kind == "audio":
            if payload.get("ptt"):
                content["ptt"] = True
            seconds = payload.get("seconds") or payload.get("duration")
            if seconds:
                content["seconds"] = seconds
        elif caption:
            content["caption"] = caption
        return OutgoingMessage(content=content, text=caption or "", kind=kind)

    raise ValueError(f"unsupported payload type: {kind!r}")


def unwrap_message(msg: Any) -> Any:
    """Peel ephemeral / view-once envelopes off a message."""

    cur = msg
    while cur is not None:
        inner = None
        for wrapper in ("ephemeralMessage", "viewOnceMessage", "viewOnceMessageV2"):
            inner = field(field(cur, wrapper), "message")
            if inner:
                break
        if not inner:
            break
        cur = inner
    return cur


def extract_text(msg: Any) -> str | None:
    """
    Best-effort text extraction from an inbound message body.

    Works on plain mappings as well as proto-like objects. Media without a
    caption yields a short placeholder.
    """

    m = unwrap_message(msg)
    if not m:
        return None

    conv = field(m, "conversation")
    if isinstance(conv, str) and conv:
        return conv

    text = field(field(m, "extendedTextMessage"), "text")
    if isinstance(text, str) and text:
        return text

    for media, placeholder in (
        ("imageMessage", "[image]"),
        ("videoMessage", "[video]"),
        ("documentMessage", "[document]"),
    ):
        part = field(m, media)
        if part:
            cap = field(part, "caption")
            return cap if isinstance(cap, str) and cap else placeholder

    if field(m, "audioMessage"):
        return "[voice message]" if field(field(m, "audioMessage"), "ptt") is True else "[audio]"

    buttons = field(m, "buttonsResponseMessage")
    if buttons:
        return field(buttons, "selectedDisplayText") or field(buttons, "selectedButtonId")

    row = field(field(field(m, "listResponseMessage"), "singleSelectReply"), "selectedRowId")
    if isinstance(row, str) and row:
        return row

    reaction = field(field(m, "reactionMessage"), "text")
    if isinstance(reaction, str) and reaction:
        return reaction

    if field(m, "stickerMessage"):
        return "[sticker]"
    return None


@dataclass(slots=True)
class IncomingMessage:
    from_number: str
    to_number: str
    text: str
    message_id: str | None = None
    raw: Any | None = None


def incoming_key(raw: Any) -> tuple[str | None, str | None, bool]:
    """(remote_jid, message_id, from_me) of a raw inbound message."""

    key = field(raw, "key")
    return field(key, "remoteJid"), field(key, "id"), bool(field(key, "fromMe"))


def normalize_incoming(raw: Any, own_jid: str | None) -> IncomingMessage:
    remote_jid, message_id, _ = incoming_key(raw)
    return IncomingMessage(
        from_number=jid_to_number(remote_jid),
        to_number=jid_to_number(own_jid),
        text=extract_text(field(raw, "message")) or "",
        message_id=message_id,
        raw=raw,
    )
