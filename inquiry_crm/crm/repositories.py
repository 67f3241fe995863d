from __future__ import annotations

from typing import Any

from sqlalchemy import Select, select

from inquiry_crm.crm.models import FollowUpRecord, Inquiry
from inquiry_crm.platform.security.context import Subject
from inquiry_crm.platform.security.repository import BaseRepository
from inquiry_crm.platform.security.scoping import ScopedResource


class InquiryRepository(BaseRepository):
    resource = "inquiry"
    model = Inquiry

    def scoped_select(self, subject: Subject) -> Select[tuple[Inquiry]]:
        return self.apply_scope_query(select(Inquiry), subject)


class FollowUpRepository(BaseRepository):
    """Follow-ups carry no ownership of their own; they inherit the parent inquiry's scope."""

    resource = "follow_up"
    model = FollowUpRecord

    def scope_model(self) -> Any:
        return Inquiry

    def scope_target(self, record: Any) -> ScopedResource:
        return record.inquiry

    def apply_scope_query(self, query: Select[Any], subject: Subject) -> Select[Any]:
        joined = query.join(Inquiry, FollowUpRecord.inquiry_id == Inquiry.id)
        return super().apply_scope_query(joined, subject)

    def scoped_select(self, subject: Subject) -> Select[tuple[FollowUpRecord]]:
        return self.apply_scope_query(select(FollowUpRecord), subject)


inquiry_repository = InquiryRepository()
follow_up_repository = FollowUpRepository()
