from __future__ import annotations

from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.crm.models import CRMCompany, CRMContact, CRMDeal
from app.crm.schemas import CompanySearchHit, ContactSearchHit, DealSearchHit, SearchResults

_LIKE_ESCAPE = "\\"


def _like_pattern(query: str) -> str:
    escaped = (
        query.replace(_LIKE_ESCAPE, _LIKE_ESCAPE * 2)
        .replace("%", f"{_LIKE_ESCAPE}%")
        .replace("_", f"{_LIKE_ESCAPE}_")
    )
    return f"%{escaped}%"


def _matches(column: Any, pattern: str) -> Any:
    return func.lower(func.coalesce(column, "")).like(pattern, escape=_LIKE_ESCAPE)


def search_entities(session: Session, query: str | None, limit: int) -> SearchResults:
    """Substring match across contacts, companies and deals.

    Results are capped at ``limit`` per entity type; no ranking is applied.
    """
    normalized = (query or "").strip().lower()
    if not normalized:
        return SearchResults()

    pattern = _like_pattern(normalized)

    contacts = session.scalars(
        select(CRMContact)
        .where(
            or_(
                _matches(CRMContact.name, pattern),
                _matches(CRMContact.email, pattern),
                _matches(CRMContact.phone, pattern),
            )
        )
        .order_by(CRMContact.name)
        .limit(limit)
    ).all()

    companies = session.scalars(
        select(CRMCompany)
        .where(
            or_(
                _matches(CRMCompany.name, pattern),
                _matches(CRMCompany.industry, pattern),
                _matches(CRMCompany.website, pattern),
            )
        )
        .order_by(CRMCompany.name)
        .limit(limit)
    ).all()

    deals = session.scalars(
        select(CRMDeal).where(_matches(CRMDeal.title, pattern)).order_by(CRMDeal.updated_at.desc()).limit(limit)
    ).all()

    return SearchResults(
        contacts=[ContactSearchHit.model_validate(row) for row in contacts],
        companies=[CompanySearchHit.model_validate(row) for row in companies],
        deals=[DealSearchHit.model_validate(row) for row in deals],
    )
