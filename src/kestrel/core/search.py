"""
Search over cached account data.

Parses Gmail-style operator queries for mail and fans a plain text query
out across the email, event and contact stores of one account.
"""

import re
import shlex
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from ..utils.logging_setup import get_logger

logger = get_logger(__name__)

DEFAULT_RESULT_LIMIT = 20
MIN_RESULTS_PER_KIND = 5

KIND_EMAIL = "email"
KIND_EVENT = "event"
KIND_CONTACT = "contact"
KIND_PRIORITY = {KIND_EMAIL: 0, KIND_EVENT: 1, KIND_CONTACT: 2}

_RELATIVE_DATE = re.compile(r"^(\d+)([dwm])$")
_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%m/%d/%Y", "%b %d, %Y", "%B %d, %Y")
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass
class SearchQuery:
    """Parsed mail search query."""
    text: str = ""
    from_: Optional[str] = None
    to: Optional[str] = None
    subject: Optional[str] = None
    in_folder: Optional[str] = None
    has_attachment: Optional[bool] = None
    is_unread: Optional[bool] = None
    is_starred: Optional[bool] = None
    after: Optional[datetime] = None
    before: Optional[datetime] = None
    
    def is_empty(self) -> bool:
        return not self.text and all(
            value is None for value in (
                self.from_, self.to, self.subject, self.in_folder, self.has_attachment,
                self.is_unread, self.is_starred, self.after, self.before,
            )
        )


@dataclass
class SearchResult:
    """One hit from unified search."""
    kind: str
    id: str
    title: str
    subtitle: str = ""
    timestamp: Optional[datetime] = None


def parse_date(value: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse an absolute or relative date used by after:/before:.
    
    Accepts YYYY-MM-DD, YYYY/MM/DD, MM/DD/YYYY, "Jan 2, 2006", today,
    yesterday, week, month, and relative forms like 3d, 2w, 1m.
    
    Args:
        value: Date text
        now: Reference time for relative dates (defaults to current UTC time)
    
    Returns:
        Aware UTC datetime, or None if the value is not a date
    """
    now = now or datetime.now(timezone.utc)
    text = value.strip().lower()
    # Named dates
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    
    if text == "today":
        return today
    if text == "yesterday":
        return today - timedelta(days=1)
    if text == "week":
        return now - timedelta(days=7)
    if text == "month":
        return now - timedelta(days=30)
    
    # Relative forms: 3d, 2w, 1m
    match = _RELATIVE_DATE.match(text)
    if match:
        amount, unit = int(match.group(1)), match.group(2)
        days = {"d": 1, "w": 7, "m": 30}[unit] * amount
        return now - timedelta(days=days)
    
    # Absolute dates
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value.strip(), fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def _split_terms(text: str) -> List[str]:
    try:
        return shlex.split(text)
    except ValueError:
        # Unbalanced quotes
        return text.split()


def parse_search_query(text: str, now: Optional[datetime] = None) -> SearchQuery:
    """
    Parse a mail search string with operators.
    
    Supported operators: from:, to:, subject:, in:, has:attachment,
    is:unread, is:read, is:starred, after:, before:. Anything else is
    free text. Values may be quoted, e.g. subject:"status report".
    
    Args:
        text: Raw query
        now: Reference time for relative dates
    
    Returns:
        SearchQuery: Parsed query
    """
    query = SearchQuery()
    free_text = []
    
    for term in _split_terms(text or ""):
        operator, sep, value = term.partition(":")
        operator = operator.lower()
        # Plain word or an operator without a value
        if not sep or not value:
            free_text.append(term)
            continue
        
        if operator == "from":
            query.from_ = value
        elif operator == "to":
            query.to = value
        elif operator == "subject":
            query.subject = value
        elif operator == "in":
            query.in_folder = value
        elif operator == "has" and value.lower() in ("attachment", "attachments"):
            query.has_attachment = True
        elif operator == "is" and value.lower() == "unread":
            query.is_unread = True
        elif operator == "is" and value.lower() == "read":
            query.is_unread = False
        elif operator == "is" and value.lower() == "starred":
            query.is_starred = True
        elif operator in ("after", "before"):
            # Unparseable dates are searched as text
            when = parse_date(value, now)
            if when is None:
                free_text.append(term)
            else:
                setattr(query, operator, when)
        else:
            free_text.append(term)
    
    query.text = " ".join(free_text)
    return query


def per_kind_limit(limit: int) -> int:
    return max(limit // 3, MIN_RESULTS_PER_KIND)


class UnifiedSearch:
    """
    Searches one account's emails, events and contacts at once.
    
    Results are grouped by kind (emails, then events, then contacts) and
    ordered most recent first within each kind.
    """
    
    def __init__(self, email_store, event_store, contact_store):
        self.email_store = email_store
        self.event_store = event_store
        self.contact_store = contact_store
    
    def search(self, query: str, limit: int = DEFAULT_RESULT_LIMIT) -> List[SearchResult]:
        """
        Run a query across all entity kinds.
        
        Args:
            query: Free text
            limit: Maximum number of results overall
        
        Returns:
            List[SearchResult]: Merged results, at most limit entries
        """
        query = (query or "").strip()
        if not query:
            return []
        if limit <= 0:
            limit = DEFAULT_RESULT_LIMIT
        
        # Each kind gets its share so one cannot crowd out the others
        cap = per_kind_limit(limit)
        results = []
        results.extend(self._email_results(query, cap))
        results.extend(self._event_results(query, cap))
        results.extend(self._contact_results(query, cap))
        
        # Stable sorts: recency within kind, then kind priority
        results.sort(key=lambda r: r.timestamp or _EPOCH, reverse=True)
        results.sort(key=lambda r: KIND_PRIORITY[r.kind])
        
        logger.debug(f"Unified search for {query!r} returned {len(results)} results")
        return results[:limit]
    
    def _email_results(self, query: str, cap: int) -> List[SearchResult]:
        return [
            SearchResult(
                kind=KIND_EMAIL,
                id=email.id,
                title=email.subject or "(no subject)",
                subtitle=email.sender,
                timestamp=email.date,
            )
            for email in self.email_store.search(query, cap)
        ]
    
    def _event_results(self, query: str, cap: int) -> List[SearchResult]:
        return [
            SearchResult(
                kind=KIND_EVENT,
                id=event.id,
                title=event.title or "(untitled event)",
                subtitle=event.location or "",
                timestamp=event.start_time,
            )
            for event in self.event_store.search(query, cap)
        ]
    
    def _contact_results(self, query: str, cap: int) -> List[SearchResult]:
        return [
            SearchResult(
                kind=KIND_CONTACT,
                id=contact.id,
                title=contact.full_name or contact.email or "",
                subtitle=contact.email or "",
                timestamp=contact.cached_at,
            )
            for contact in self.contact_store.search(query, cap)
        ]
