from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from inquiry_crm.platform.security.context import Subject
from inquiry_crm.platform.security.scoping import (
    AccessDecision,
    ResourceAction,
    ScopedResource,
    apply_scope_filter,
    decide_point_access,
    ensure_point_access,
)


class BaseRepository:
    resource = ""
    model: Any = None

    def scope_model(self) -> Any:
        return self.model

    def scope_target(self, record: Any) -> ScopedResource:
        return record

    def apply_scope_query(self, query: Select[Any], subject: Subject) -> Select[Any]:
        return apply_scope_filter(query, subject, self.scope_model())

    def can_access(self, subject: Subject, record: Any, action: ResourceAction | str = ResourceAction.READ) -> bool:
        return decide_point_access(subject, self.scope_target(record), action) is AccessDecision.ALLOW

    def validate_point_access(
        self,
        subject: Subject,
        record: Any,
        action: ResourceAction | str = ResourceAction.READ,
    ) -> None:
        ensure_point_access(
            subject,
            self.scope_target(record),
            action,
            resource_type=self.resource,
            resource_id=getattr(record, "id", None),
        )
