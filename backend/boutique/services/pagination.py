from __future__ import annotations

from typing import Callable

from flask import current_app


def paginate_query(query, *, page: int | None, per_page: int | None, serialize: Callable) -> dict:
    """
    Shape a query into the paged result every search endpoint returns.

    page=None returns every row without pagination metadata.
    """
    if page is None:
        rows = query.all()
        return {
            "items": [serialize(row) for row in rows],
            "count": len(rows),
        }

    default_size = current_app.config.get("DEFAULT_PAGE_SIZE", 20)
    max_size = current_app.config.get("MAX_PAGE_SIZE", 100)
    per_page = max(1, min(per_page or default_size, max_size))
    page = max(page, 1)

    total = query.order_by(None).count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1

    rows = query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [serialize(row) for row in rows],
        "count": len(rows),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }
