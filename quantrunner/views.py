"""
Read-only, paginated views over backtest results.
"""
import math
from typing import Optional, Tuple

from quantrunner.results import BacktestResults, TradeRecord


def total_pages(results: Optional[BacktestResults], page_size: int) -> int:
    """
    Number of pages needed to show every trade, at least 1 even when there
    are no trades.
    """
    if page_size <= 0:
        raise ValueError(f"page_size must be positive, got {page_size}")
    count = len(results.trades) if results is not None else 0
    return max(1, math.ceil(count / page_size))


def page(results: BacktestResults, page_number: int, page_size: int) -> Tuple[TradeRecord, ...]:
    """
    Returns the trades shown on a 1-based page. Pages past the end are empty.

    Args:
        results (BacktestResults): The result set to slice. It is not modified.
        page_number (int): 1-based page index.
        page_size (int): Trades per page.
    """
    if page_number < 1:
        raise ValueError(f"page_number must be >= 1, got {page_number}")
    if page_size <= 0:
        raise ValueError(f"page_size must be positive, got {page_size}")
    start = (page_number - 1) * page_size
    return results.trades[start:start + page_size]


def current_page(session) -> Tuple[TradeRecord, ...]:
    """The trades on the session's current page, empty without results."""
    if session.results is None:
        return ()
    return page(session.results, session.page, session.page_size)
