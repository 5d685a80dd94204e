"""
MES Process Routing
Blueprint registry.
"""

from flask import current_app, request


def page_args(default_size=20):
    """Read 0-based page/size paging parameters from the query string.

    Query params:
        page - page index (default 0, negative values become 0)
        size - page size (default ``default_size``, capped at TEMPLATE_PAGE_SIZE_MAX)

    Returns:
        (page, size)
    """
    max_size = current_app.config.get("TEMPLATE_PAGE_SIZE_MAX", 100)
    try:
        page = max(int(request.args.get("page", 0)), 0)
    except (ValueError, TypeError):
        page = 0
    try:
        size = min(max(int(request.args.get("size", default_size)), 1), max_size)
    except (ValueError, TypeError):
        size = default_size
    return page, size
