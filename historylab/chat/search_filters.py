"""
Search filter construction for the document archive.

The archive indexes each chunk with integer ``authored_year_month`` (YYYYMM) and
``authored_year_month_day`` (YYYYMMDD) metadata. The model asks for ranges as
``YYYY-MM`` / ``YYYY-MM-DD`` strings; day precision wins over month precision,
and an equal start and end becomes an exact match.
"""

from typing import Optional

from pydantic import BaseModel, Field


class QueryCollectionArgs(BaseModel):
    """Arguments of the ``queryCollection`` tool."""

    query: str = Field(..., description="The semantic search query text - make focused, specific queries rather than combining multiple topics")
    doc_id: Optional[str] = Field(None, description="Filter by specific document ID when looking for more information within a document")
    authored_start_year_month: Optional[str] = Field(None, description="Start year and month for filtering documents (format: 'YYYY-MM'). Preferred for most searches.")
    authored_end_year_month: Optional[str] = Field(None, description="End year and month for filtering documents (format: 'YYYY-MM'). Preferred for most searches.")
    authored_start_year_month_day: Optional[str] = Field(None, description="Start date for filtering documents (format: 'YYYY-MM-DD'). Only for highly date-sensitive searches.")
    authored_end_year_month_day: Optional[str] = Field(None, description="End date for filtering documents (format: 'YYYY-MM-DD'). Only for highly date-sensitive searches.")


def year_month_to_number(value: str) -> int:
    """``"1962-10"`` -> ``196210``."""
    year, month = value.split("-")[:2]
    return int(f"{year}{month}")


def year_month_day_to_number(value: str) -> int:
    """``"1962-10-16"`` -> ``19621016``."""
    return int(value.replace("-", ""))


def _range(start: Optional[str], end: Optional[str], convert) -> dict:
    if start and end and start == end:
        return {"$eq": convert(start)}
    bounds = {}
    if start:
        bounds["$gte"] = convert(start)
    if end:
        bounds["$lte"] = convert(end)
    return bounds


def build_filters(args: QueryCollectionArgs) -> Optional[dict]:
    """
    Build the metadata filter for a search call.

    Returns
    -------
    dict | None
        ``{"doc_id": ..., "authored_year_month[_day]": {"$gte"|"$lte"|"$eq": int}}``,
        or None when no filter applies.

    Raises
    ------
    ValueError
        If a date string is not numeric after removing dashes.
    """
    filters: dict = {}
    if args.doc_id:
        filters["doc_id"] = args.doc_id

    if args.authored_start_year_month_day or args.authored_end_year_month_day:
        filters["authored_year_month_day"] = _range(
            args.authored_start_year_month_day,
            args.authored_end_year_month_day,
            year_month_day_to_number,
        )
    elif args.authored_start_year_month or args.authored_end_year_month:
        filters["authored_year_month"] = _range(
            args.authored_start_year_month,
            args.authored_end_year_month,
            year_month_to_number,
        )

    return filters or None
