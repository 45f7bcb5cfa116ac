"""Idempotent ingestion of one collected batch into the entity store."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from ..config import MergeSettings
from ..data.records import (
    DATA_TYPE_FOLLOWING,
    DATA_TYPE_REPLIES,
    POST_DATA_TYPES,
    RawFollowRecord,
    RawMapping,
    RawPostRecord,
    normalize_handle,
    normalize_records,
)
from ..data.store import HarvestStore
from ..errors import MergeFailed, StoreUnavailable
from .reply_links import apply_reply_links

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeResult:
    """Counts for one merged batch.

    ``new`` and ``updated`` come from a lookup before the write and are for
    reporting only; every valid record is written either way.
    """

    total: int = 0
    new: int = 0
    updated: int = 0
    discarded: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def _post_row(record: RawPostRecord, user_id: int) -> dict:
    row = asdict(record)
    row.pop("author_handle")
    row.pop("author_name")
    row["user_id"] = user_id
    return row


def _dedupe_last(records: Iterable, key) -> list:
    latest: Dict[object, object] = {}
    for record in records:
        latest[key(record)] = record
    return list(latest.values())


class IncrementalMerger:
    """Classify and upsert freshly collected records for one entity."""

    def __init__(self, store: HarvestStore, settings: Optional[MergeSettings] = None) -> None:
        self._store = store
        self._settings = settings or MergeSettings()

    def merge(self, handle: str, data_type: str, raw_records: Iterable[RawMapping]) -> MergeResult:
        """Merge ``raw_records`` collected for ``handle``/``data_type``.

        Records without a usable id are discarded and counted. Store errors
        abort the merge as :class:`MergeFailed`; chunks already written stay.
        """
        owner = normalize_handle(handle)
        if not owner:
            raise ValueError("handle is required")

        valid, rejected = normalize_records(data_type, raw_records)
        if rejected:
            LOGGER.warning(
                "Discarded %s record(s) for @%s %s: %s",
                len(rejected),
                owner,
                data_type,
                rejected[0].reason,
            )
        if not valid:
            LOGGER.info("Merged @%s %s: no valid records (discarded=%s)", owner, data_type, len(rejected))
            return MergeResult(discarded=len(rejected))

        try:
            if data_type in POST_DATA_TYPES:
                total, new = self._merge_posts(owner, data_type, valid)
            else:
                total, new = self._merge_follows(owner, data_type, valid)
        except (StoreUnavailable, SQLAlchemyError) as exc:
            LOGGER.error("Merge aborted for @%s %s: %s", owner, data_type, exc)
            raise MergeFailed(owner, data_type, str(exc)) from exc

        result = MergeResult(total=total, new=new, updated=total - new, discarded=len(rejected))
        LOGGER.info(
            "Merged @%s %s: total=%s new=%s updated=%s discarded=%s",
            owner,
            data_type,
            result.total,
            result.new,
            result.updated,
            result.discarded,
        )
        return result

    def _merge_posts(self, owner: str, data_type: str, records: Sequence[RawPostRecord]) -> Tuple[int, int]:
        if data_type == DATA_TYPE_REPLIES:
            records = apply_reply_links(records)
        posts: List[RawPostRecord] = _dedupe_last(records, lambda record: record.post_id)

        display_name = next(
            (post.author_name for post in posts if post.author_handle == owner and post.author_name),
            None,
        )
        owner_id = self._store.ensure_user(owner, display_name)

        post_ids = [post.post_id for post in posts]
        existing = self._store.existing_post_ids(owner_id, post_ids)
        new = len(set(post_ids) - existing)

        LOGGER.info("Writing to DB: %s %s for @%s", len(posts), data_type, owner)
        self._store.upsert_posts(
            [_post_row(post, owner_id) for post in posts],
            chunk_size=self._settings.post_chunk_size,
        )
        return len(posts), new

    def _merge_follows(
        self, owner: str, data_type: str, records: Sequence[RawFollowRecord]
    ) -> Tuple[int, int]:
        profiles: List[RawFollowRecord] = _dedupe_last(records, lambda record: record.handle)

        LOGGER.info("Writing to DB: %s %s for @%s", len(profiles), data_type, owner)
        user_ids = self._store.upsert_users(
            [asdict(profile) for profile in profiles],
            chunk_size=self._settings.user_chunk_size,
        )
        owner_id = self._store.ensure_user(owner)

        listed = [user_ids[profile.handle] for profile in profiles if profile.handle in user_ids]
        if data_type == DATA_TYPE_FOLLOWING:
            pairs = [(owner_id, listed_id) for listed_id in listed]
        else:
            pairs = [(listed_id, owner_id) for listed_id in listed]
        pairs = list(dict.fromkeys(pairs))

        existing = self._store.existing_follow_pairs(pairs)
        new = len(set(pairs) - existing)
        self._store.insert_follows(pairs, chunk_size=self._settings.edge_chunk_size)
        return len(pairs), new
