from __future__ import annotations

from typing import Any, Optional

from siteauth.logging import get_logger
from siteauth.storage.errors import ConstraintViolation
from siteauth.storage.models import Company, CompanyMembership, Role

logger = get_logger(__name__)


class TenancyDirectory:
    """Company lookup and account-to-company links."""

    def __init__(self, store) -> None:
        self.store = store

    def get_company(self, company_id: Optional[str]) -> Optional[Company]:
        if not company_id:
            return None
        return self.store.get_company(company_id)

    def create_company(self, name: str, **fields: Any) -> Company:
        company = self.store.create_company(name, **fields)
        logger.info("company_created", company_id=company.id)
        return company

    def link_account(
        self, account_id: str, company_id: str, role: Role, *, exist_ok: bool = True
    ) -> Optional[CompanyMembership]:
        try:
            return self.store.add_membership(account_id, company_id, role)
        except ConstraintViolation as exc:
            if exist_ok and exc.detail.get("field") == "company_id":
                return None
            raise

    def has_membership(self, account_id: str) -> bool:
        return self.store.has_membership(account_id)

    def primary_company_id(self, account_id: str) -> Optional[str]:
        memberships = self.store.list_memberships(account_id)
        return memberships[0].company_id if memberships else None
