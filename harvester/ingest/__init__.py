"""Merging collected batches into the entity store."""

from __future__ import annotations

from .merger import IncrementalMerger, MergeResult
from .reply_links import ReplyLink, infer_reply_links

__all__ = [
    "IncrementalMerger",
    "MergeResult",
    "ReplyLink",
    "infer_reply_links",
]
