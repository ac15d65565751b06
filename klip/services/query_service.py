#!/usr/bin/env python3
"""
Query Service - Listing, search and date facet for the UI
"""
import logging
from datetime import date, datetime
from typing import List, Optional, Union

from klip.models import Clip
from klip.services.database_service import DatabaseService

logger = logging.getLogger(__name__)


def parse_date_filter(value: Union[date, str, None]) -> Optional[date]:
    """Accept a date, an ISO YYYY-MM-DD string, or an empty value"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        raise ValueError("date_filter must be a calendar date, not a timestamp")
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            raise ValueError(f"Invalid date_filter {value!r}, expected YYYY-MM-DD")
    raise ValueError(f"Invalid date_filter type: {type(value).__name__}")


class QueryService:
    """Service answering list and search requests"""

    def __init__(self, database_service: DatabaseService):
        logger.info("[QueryService.__init__] Starting initialization...")
        self.db_service = database_service
        logger.info("[QueryService.__init__] Initialization complete")

    def get_clips(self, search_text: Optional[str] = None,
                  date_filter: Union[date, str, None] = None,
                  limit: Optional[int] = None) -> List[Clip]:
        """
        Get clips newest first

        Args:
            search_text: Case and accent insensitive substring, "" means no filter
            date_filter: Local calendar date, "" means no filter
            limit: Optional maximum number of clips
        """
        search = search_text or None
        day = parse_date_filter(date_filter)
        if limit is not None and limit < 0:
            raise ValueError("limit must not be negative")
        return self.db_service.query(search, day, limit)

    def get_dates_with_clips(self) -> List[date]:
        """Get every local date with at least one clip, newest first"""
        return self.db_service.list_distinct_dates()
