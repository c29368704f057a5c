"""
Event codec for memo payloads.
Handles encoding, decoding and validation of feed events, and extraction of the
memo string from a jsonParsed transaction.
"""

import base64
import binascii
import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import base58
import structlog
from pydantic import BaseModel, ConfigDict, StrictBool, StrictInt, StrictStr, ValidationError as PydanticValidationError

from memofeed.core.config import LedgerConfig


logger = structlog.get_logger(__name__)


EVENT_VERSION = 1

MAX_LINES = 6
MAX_LINE_CHARS = 140
MAX_KEY_CHARS = 64
MAX_MANIFEST_REGISTRIES = 8

# Wire tags; "api" is what deployed clients write for publications
PUBLISH_TAG = "api"
PUBLISH_TAGS = ("api", "post")
LIKE_TAG = "like"
MANIFEST_TAG = "manifest"


@dataclass(frozen=True)
class PublishEvent:
    """A content publication."""
    content_key: str
    text_lines: Tuple[str, ...]
    creator: str
    watermark: Optional[str] = None
    version: int = EVENT_VERSION

    kind = "post"


@dataclass(frozen=True)
class LikeEvent:
    """A like or superlike carrying a tip amount in lamports."""
    content_id: str
    liker: str
    amount_units: int
    superlike: bool = False
    version: int = EVENT_VERSION

    kind = "like"


@dataclass(frozen=True)
class ManifestEvent:
    """Owner-signed list of the currently active registries."""
    tag: str
    owner: str
    registries: Tuple[str, ...]
    updated_at: int
    version: int = EVENT_VERSION

    kind = "manifest"


Event = Union[PublishEvent, LikeEvent, ManifestEvent]


# Wire schemas. Strict so that "1" or true never passes for an integer.
class _Payload(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")


class PublishPayload(_Payload):
    v: StrictInt
    t: StrictStr
    k: StrictStr
    l: List[StrictStr]
    c: StrictStr
    wm: Optional[StrictStr] = None


class LikePayload(_Payload):
    v: StrictInt
    t: StrictStr
    id: StrictStr
    c: StrictStr
    amt: StrictInt
    x: Optional[Union[StrictBool, StrictInt]] = None


class ManifestPayload(_Payload):
    tag: StrictStr
    owner: StrictStr
    registries: List[StrictStr]
    updatedTs: Optional[StrictInt] = None
    version: Optional[StrictInt] = None
    v: Optional[StrictInt] = None


def _clip(value: Optional[str], limit: int = MAX_KEY_CHARS) -> str:
    return str(value or "")[:limit]


def to_payload(event: Event) -> Dict[str, Any]:
    """Canonical, truncated wire dict for an event."""
    if isinstance(event, PublishEvent):
        payload: Dict[str, Any] = {
            "v": event.version,
            "t": PUBLISH_TAG,
            "k": _clip(event.content_key),
            "l": [_clip(line, MAX_LINE_CHARS) for line in list(event.text_lines)[:MAX_LINES]],
        }
        if event.watermark is not None:
            payload["wm"] = _clip(event.watermark)
        payload["c"] = _clip(event.creator)
        return payload

    if isinstance(event, LikeEvent):
        payload = {
            "v": event.version,
            "t": LIKE_TAG,
            "id": _clip(event.content_id),
            "c": _clip(event.liker),
            "amt": max(0, int(event.amount_units)),
        }
        if event.superlike:
            payload["x"] = 1
        return payload

    if isinstance(event, ManifestEvent):
        return {
            "tag": _clip(event.tag),
            "owner": _clip(event.owner),
            "registries": [_clip(r) for r in list(event.registries)[:MAX_MANIFEST_REGISTRIES]],
            "updatedTs": int(event.updated_at),
            "version": event.version,
        }

    raise TypeError(f"Unsupported event type: {type(event).__name__}")


def encode(event: Event) -> bytes:
    """Compact UTF-8 JSON for a memo instruction."""
    return json.dumps(to_payload(event), separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _publish_from(obj: Dict[str, Any]) -> Optional[PublishEvent]:
    p = PublishPayload.model_validate(obj)
    if p.v != EVENT_VERSION or p.t not in PUBLISH_TAGS:
        return None
    return PublishEvent(
        content_key=p.k,
        text_lines=tuple(p.l),
        creator=p.c,
        watermark=p.wm,
        version=p.v,
    )


def _like_from(obj: Dict[str, Any]) -> Optional[LikeEvent]:
    p = LikePayload.model_validate(obj)
    if p.v != EVENT_VERSION or p.t != LIKE_TAG or p.amt < 0:
        return None
    return LikeEvent(
        content_id=p.id,
        liker=p.c,
        amount_units=p.amt,
        superlike=bool(p.x),
        version=p.v,
    )


def _manifest_from(obj: Dict[str, Any]) -> Optional[ManifestEvent]:
    p = ManifestPayload.model_validate(obj)
    version = p.version if p.version is not None else (p.v if p.v is not None else EVENT_VERSION)
    if version != EVENT_VERSION or not p.registries:
        return None
    return ManifestEvent(
        tag=p.tag,
        owner=p.owner,
        registries=tuple(p.registries),
        updated_at=p.updatedTs or 0,
        version=version,
    )


def _event_from(obj: Dict[str, Any]) -> Optional[Event]:
    tag = obj.get("t")
    if tag in PUBLISH_TAGS:
        return _publish_from(obj)
    if tag == LIKE_TAG:
        return _like_from(obj)
    if tag == MANIFEST_TAG or (tag is None and "tag" in obj and "registries" in obj):
        return _manifest_from(obj)
    return None


def from_payload(obj: Any) -> Optional[Event]:
    """Validate a wire dict; None for anything that is not a known event."""
    if not isinstance(obj, dict):
        return None
    try:
        event = _event_from(obj)
        # JSON escapes can smuggle in lone surrogates that UTF-8 cannot carry
        if event is not None:
            encode(event)
    except (PydanticValidationError, UnicodeEncodeError):
        return None
    return event


def _parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (ValueError, TypeError, RecursionError):
        return None


def decode(data: Union[bytes, str, None]) -> Optional[Event]:
    """
    Decode a memo payload. Never raises.

    Tries the payload as UTF-8 JSON first, then as base64-wrapped JSON.
    """
    if not data:
        return None
    if isinstance(data, str):
        text: Optional[str] = data
        raw = data.encode("utf-8", errors="ignore")
    else:
        raw = bytes(data)
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = None

    if text is not None:
        event = from_payload(_parse_json(text.strip()))
        if event is not None:
            return event

    try:
        unwrapped = base64.b64decode(raw.strip(), validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return None
    return from_payload(_parse_json(unwrapped))


# Memo extraction strategies, tried in order. Each takes a jsonParsed
# transaction dict and returns the memo string/bytes or None.

MemoExtractor = Callable[[Dict[str, Any]], Optional[Union[str, bytes]]]

_MEMO_LOG_RE = re.compile(r'^Memo \(len \d+\): (".*")$', re.DOTALL)
_LOG_PREFIX = "Program log: "
_META_MEMO_PREFIX_RE = re.compile(r"^\[\d+\] ")


def _message(tx: Dict[str, Any]) -> Dict[str, Any]:
    return ((tx or {}).get("transaction") or {}).get("message") or {}


def _account_key(key: Any) -> Optional[str]:
    if isinstance(key, str):
        return key
    if isinstance(key, dict):
        return key.get("pubkey")
    return None


def _instruction_program(ix: Dict[str, Any], account_keys: Sequence[Any]) -> Optional[str]:
    if isinstance(ix.get("programId"), str):
        return ix["programId"]
    index = ix.get("programIdIndex")
    if isinstance(index, int) and 0 <= index < len(account_keys):
        return _account_key(account_keys[index])
    return None


def _memo_instructions(tx: Dict[str, Any]) -> List[Dict[str, Any]]:
    message = _message(tx)
    keys = message.get("accountKeys") or []
    return [
        ix for ix in (message.get("instructions") or [])
        if isinstance(ix, dict) and _instruction_program(ix, keys) == LedgerConfig.MEMO_PROGRAM_ID
    ]


def extract_parsed_memo(tx: Dict[str, Any]) -> Optional[str]:
    """Memo text the gateway already parsed for us."""
    for ix in _memo_instructions(tx):
        parsed = ix.get("parsed")
        if isinstance(parsed, str):
            return parsed
        if isinstance(parsed, dict) and isinstance(parsed.get("memo"), str):
            return parsed["memo"]
    return None


def extract_instruction_data(tx: Dict[str, Any]) -> Optional[Union[str, bytes]]:
    """Raw memo instruction data; base58 as sent on the wire, else as-is."""
    for ix in _memo_instructions(tx):
        data = ix.get("data")
        if not isinstance(data, str) or not data:
            continue
        try:
            decoded = base58.b58decode(data)
            decoded.decode("utf-8")
            return decoded
        except (ValueError, UnicodeDecodeError):
            return data
    return None


def extract_meta_memo(tx: Dict[str, Any]) -> Optional[str]:
    """Memo the gateway attached to the transaction meta, minus any `[len] ` prefix."""
    memo = ((tx or {}).get("meta") or {}).get("memo")
    if not isinstance(memo, str):
        return None
    return _META_MEMO_PREFIX_RE.sub("", memo, count=1)


def extract_log_memo(tx: Dict[str, Any]) -> Optional[str]:
    """Last `Program log:` line, unwrapping the memo program's own log form."""
    logs = ((tx or {}).get("meta") or {}).get("logMessages") or []
    lines = [line for line in logs if isinstance(line, str) and line.startswith(_LOG_PREFIX)]
    if not lines:
        return None
    body = lines[-1][len(_LOG_PREFIX):]
    match = _MEMO_LOG_RE.match(body)
    if match:
        unquoted = _parse_json(match.group(1))
        if isinstance(unquoted, str):
            return unquoted
    return body


DEFAULT_EXTRACTORS: Tuple[MemoExtractor, ...] = (
    extract_parsed_memo,
    extract_instruction_data,
    extract_meta_memo,
    extract_log_memo,
)


@dataclass
class MemoReader:
    """Runs extractor strategies in order; the first hit wins."""
    extractors: Sequence[MemoExtractor] = field(default_factory=lambda: DEFAULT_EXTRACTORS)

    def extract(self, tx: Optional[Dict[str, Any]]) -> Optional[Union[str, bytes]]:
        if not tx:
            return None
        for extractor in self.extractors:
            try:
                memo = extractor(tx)
            except (AttributeError, TypeError, KeyError, IndexError) as e:
                logger.debug("Memo extractor failed", extractor=extractor.__name__, error=str(e))
                continue
            if memo:
                return memo
        return None

    def read_event(self, tx: Optional[Dict[str, Any]]) -> Optional[Event]:
        """Extract and decode in one step."""
        return decode(self.extract(tx))
