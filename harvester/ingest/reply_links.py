"""Best-effort reconstruction of reply threads from listing order.

A replies listing interleaves each reply with the post it answers, so the
record just before a reply is taken as its parent. This is only as good as
the listing order: threads with unrelated posts interleaved get wrong links,
and nothing here can detect that.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from ..data.records import RawPostRecord


@dataclass(frozen=True)
class ReplyLink:
    post_id: str
    parent_post_id: Optional[str]
    conversation_id: Optional[str]


def infer_reply_links(ordered_records: Sequence[RawPostRecord]) -> List[ReplyLink]:
    """Return one link per record, in input order.

    A non-reply opens a conversation rooted at itself. A reply points at the
    previous record and joins the open conversation, or treats the previous
    record as the root when none is open.
    """

    links: List[ReplyLink] = []
    previous_id: Optional[str] = None
    root_id: Optional[str] = None
    for record in ordered_records:
        if record.is_reply:
            conversation = root_id or previous_id
            links.append(ReplyLink(record.post_id, previous_id, conversation))
        else:
            root_id = record.post_id
            links.append(ReplyLink(record.post_id, None, record.post_id))
        previous_id = record.post_id
    return links


def apply_reply_links(ordered_records: Sequence[RawPostRecord]) -> List[RawPostRecord]:
    """Copy ``ordered_records`` with inferred links filled in.

    Links the collector reported itself are kept as they are.
    """

    links = infer_reply_links(ordered_records)
    return [
        record
        if record.parent_post_id or record.conversation_id
        else record.with_links(link.parent_post_id, link.conversation_id)
        for record, link in zip(ordered_records, links)
    ]
