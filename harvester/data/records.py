"""Typed raw records and normalization of collector output.

Collectors hand back untyped string-keyed mappings whose keys follow whatever
naming the export source uses (``"Tweet ID"``, ``"tweet_id"``, ``"ID"`` ...).
Everything past this module works with :class:`RawPostRecord` and
:class:`RawFollowRecord` only.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from ..errors import InvalidRecord

RawMapping = Mapping[str, Any]

DATA_TYPE_POSTS = "posts"
DATA_TYPE_REPLIES = "replies"
DATA_TYPE_FOLLOWERS = "followers"
DATA_TYPE_FOLLOWING = "following"
POST_DATA_TYPES = (DATA_TYPE_POSTS, DATA_TYPE_REPLIES)
FOLLOW_DATA_TYPES = (DATA_TYPE_FOLLOWERS, DATA_TYPE_FOLLOWING)
DATA_TYPES = POST_DATA_TYPES + FOLLOW_DATA_TYPES

POST_TYPE_POST = "post"
POST_TYPE_REPLY = "reply"

POST_ALIASES = {
    "post_id": ("ID", "id", "Tweet ID", "tweet_id", "status_id", "post_id"),
    "author_handle": ("Author Username", "author_username", "author_handle", "Username", "username"),
    "author_name": ("Author Name", "author_name", "Name", "name"),
    "text": ("Text", "text", "full_text"),
    "language": ("Language", "language", "lang"),
    "post_type": ("Type", "type", "post_type"),
    "view_count": ("View Count", "view_count", "views"),
    "reply_count": ("Reply Count", "reply_count", "replies"),
    "repost_count": ("Retweet Count", "retweet_count", "Repost Count", "repost_count"),
    "quote_count": ("Quote Count", "quote_count"),
    "favorite_count": ("Favorite Count", "favorite_count", "Like Count", "like_count"),
    "bookmark_count": ("Bookmark Count", "bookmark_count"),
    "published_at": ("Created At", "created_at", "published_at"),
    "post_url": ("Tweet URL", "tweet_url", "Post URL", "post_url", "url"),
    "source": ("Source", "source"),
    "hashtags": ("Hashtags", "hashtags"),
    "urls": ("URLs", "Urls", "urls"),
    "media_type": ("Media Type", "media_type"),
    "media_urls": ("Media URLs", "media_urls"),
    "parent_post_id": ("in_reply_to_tweet_id", "in_reply_to_status_id_str", "parent_post_id"),
    "conversation_id": ("conversation_id", "Conversation ID"),
}

FOLLOW_ALIASES = {
    "external_id": ("User ID", "user_id", "id_str", "external_id"),
    "handle": ("Username", "username", "screen_name", "handle"),
    "display_name": ("Name", "name", "display_name"),
    "bio": ("Bio", "bio", "description"),
    "location": ("Location", "location"),
    "website": ("Website", "website"),
    "verified": ("Verified", "verified"),
    "blue_verified": ("Is Blue Verified", "is_blue_verified", "blue_verified"),
    "followers_count": ("Followers Count", "followers_count"),
    "following_count": ("Following Count", "following_count"),
    "posts_count": ("Tweets Count", "tweets_count", "posts_count"),
    "avatar_url": ("Avatar URL", "avatar_url", "profile_image_url"),
    "banner_url": ("Profile Banner URL", "banner_url"),
}

_PLATFORM_TIME_FORMAT = "%a %b %d %H:%M:%S %z %Y"
_LIST_SPLIT = re.compile(r"[,\s]+")


@dataclass(frozen=True)
class RawPostRecord:
    """A post or reply as scraped, before it is written."""

    post_id: str
    author_handle: Optional[str] = None
    author_name: Optional[str] = None
    text: Optional[str] = None
    language: Optional[str] = None
    post_type: str = POST_TYPE_POST
    view_count: int = 0
    reply_count: int = 0
    repost_count: int = 0
    quote_count: int = 0
    favorite_count: int = 0
    bookmark_count: int = 0
    published_at: Optional[datetime] = None
    post_url: Optional[str] = None
    source: Optional[str] = None
    hashtags: List[str] = field(default_factory=list)
    urls: List[str] = field(default_factory=list)
    media_type: Optional[str] = None
    media_urls: List[str] = field(default_factory=list)
    parent_post_id: Optional[str] = None
    conversation_id: Optional[str] = None

    @property
    def is_reply(self) -> bool:
        return self.post_type == POST_TYPE_REPLY

    def with_links(self, parent_post_id: Optional[str], conversation_id: Optional[str]) -> "RawPostRecord":
        return replace(self, parent_post_id=parent_post_id, conversation_id=conversation_id)


@dataclass(frozen=True)
class RawFollowRecord:
    """A profile row from a followers/following listing."""

    handle: str
    external_id: Optional[str] = None
    display_name: Optional[str] = None
    bio: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = None
    verified: bool = False
    blue_verified: bool = False
    followers_count: Optional[int] = None
    following_count: Optional[int] = None
    posts_count: Optional[int] = None
    avatar_url: Optional[str] = None
    banner_url: Optional[str] = None


RawRecord = Union[RawPostRecord, RawFollowRecord]


def normalize_handle(value: Any) -> Optional[str]:
    """Return a lower-cased handle without the leading ``@`` (None if blank)."""

    if value is None:
        return None
    text = str(value).strip().lstrip("@").strip()
    return text.lower() or None


def parse_count(raw: Any) -> Optional[int]:
    """Parse integers and compact counters such as ``"1,234"`` or ``"90.5K"``."""

    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw)
    cleaned = str(raw).strip()
    if not cleaned:
        return None

    number_pattern = re.search(r"([0-9][0-9.,]*[KkMmBb]?)", cleaned)
    if not number_pattern:
        return None

    normalized = number_pattern.group(1).replace(",", "")
    multiplier = 1
    if normalized.lower().endswith("k"):
        multiplier = 1_000
        normalized = normalized[:-1]
    elif normalized.lower().endswith("m"):
        multiplier = 1_000_000
        normalized = normalized[:-1]
    elif normalized.lower().endswith("b"):
        multiplier = 1_000_000_000
        normalized = normalized[:-1]

    try:
        base = float(normalized)
    except ValueError:
        return None

    return int(base * multiplier)


def parse_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        return raw.strip().lower() == "true"
    return False


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse ISO-8601 or platform-format timestamps into naive UTC."""

    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        parsed = raw
    else:
        text = str(raw).strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed = datetime.strptime(text, _PLATFORM_TIME_FORMAT)
            except ValueError:
                return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_list(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(item).strip() for item in raw if str(item).strip()]
    return [item for item in _LIST_SPLIT.split(str(raw).strip()) if item]


def _pick(record: RawMapping, aliases: Sequence[str]) -> Any:
    for key in aliases:
        value = record.get(key)
        if value is not None and value != "":
            return value
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _normalize_post_type(raw: Any) -> str:
    text = (_text(raw) or POST_TYPE_POST).lower()
    if text in {"tweet", "post", "original"}:
        return POST_TYPE_POST
    return text


def normalize_post_record(record: RawMapping) -> RawPostRecord:
    """Map a raw post mapping onto :class:`RawPostRecord`.

    Raises :class:`InvalidRecord` when no post id can be found.
    """

    post_id = _text(_pick(record, POST_ALIASES["post_id"]))
    if not post_id:
        raise InvalidRecord("missing post id", record)

    def count(name: str) -> int:
        return parse_count(_pick(record, POST_ALIASES[name])) or 0

    return RawPostRecord(
        post_id=post_id,
        author_handle=normalize_handle(_pick(record, POST_ALIASES["author_handle"])),
        author_name=_text(_pick(record, POST_ALIASES["author_name"])),
        text=_text(_pick(record, POST_ALIASES["text"])),
        language=_text(_pick(record, POST_ALIASES["language"])),
        post_type=_normalize_post_type(_pick(record, POST_ALIASES["post_type"])),
        view_count=count("view_count"),
        reply_count=count("reply_count"),
        repost_count=count("repost_count"),
        quote_count=count("quote_count"),
        favorite_count=count("favorite_count"),
        bookmark_count=count("bookmark_count"),
        published_at=parse_timestamp(_pick(record, POST_ALIASES["published_at"])),
        post_url=_text(_pick(record, POST_ALIASES["post_url"])),
        source=_text(_pick(record, POST_ALIASES["source"])),
        hashtags=parse_list(_pick(record, POST_ALIASES["hashtags"])),
        urls=parse_list(_pick(record, POST_ALIASES["urls"])),
        media_type=_text(_pick(record, POST_ALIASES["media_type"])),
        media_urls=parse_list(_pick(record, POST_ALIASES["media_urls"])),
        parent_post_id=_text(_pick(record, POST_ALIASES["parent_post_id"])),
        conversation_id=_text(_pick(record, POST_ALIASES["conversation_id"])),
    )


def normalize_follow_record(record: RawMapping) -> RawFollowRecord:
    """Map a raw follow-listing mapping onto :class:`RawFollowRecord`."""

    handle = normalize_handle(_pick(record, FOLLOW_ALIASES["handle"]))
    if not handle:
        raise InvalidRecord("missing handle", record)

    return RawFollowRecord(
        handle=handle,
        external_id=_text(_pick(record, FOLLOW_ALIASES["external_id"])),
        display_name=_text(_pick(record, FOLLOW_ALIASES["display_name"])),
        bio=_text(_pick(record, FOLLOW_ALIASES["bio"])),
        location=_text(_pick(record, FOLLOW_ALIASES["location"])),
        website=_text(_pick(record, FOLLOW_ALIASES["website"])),
        verified=parse_bool(_pick(record, FOLLOW_ALIASES["verified"])),
        blue_verified=parse_bool(_pick(record, FOLLOW_ALIASES["blue_verified"])),
        followers_count=parse_count(_pick(record, FOLLOW_ALIASES["followers_count"])),
        following_count=parse_count(_pick(record, FOLLOW_ALIASES["following_count"])),
        posts_count=parse_count(_pick(record, FOLLOW_ALIASES["posts_count"])),
        avatar_url=_text(_pick(record, FOLLOW_ALIASES["avatar_url"])),
        banner_url=_text(_pick(record, FOLLOW_ALIASES["banner_url"])),
    )


def normalize_records(
    data_type: str, records: Iterable[RawMapping]
) -> Tuple[List[RawRecord], List[InvalidRecord]]:
    """Normalize a collector batch, splitting valid records from rejects.

    Order of the valid records follows the input order.
    """

    if data_type in POST_DATA_TYPES:
        normalize = normalize_post_record
    elif data_type in FOLLOW_DATA_TYPES:
        normalize = normalize_follow_record
    else:
        raise ValueError(f"Unknown data type: {data_type!r}")

    valid: List[RawRecord] = []
    rejected: List[InvalidRecord] = []
    for record in records:
        if isinstance(record, (RawPostRecord, RawFollowRecord)):
            valid.append(record)
            continue
        try:
            valid.append(normalize(record))
        except InvalidRecord as exc:
            rejected.append(exc)
    return valid, rejected
