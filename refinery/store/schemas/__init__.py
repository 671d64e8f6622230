"""Schemas for store records."""

from refinery.store.schemas.issue_record import IssueRecord

__all__ = ["IssueRecord"]
