import math
import re
from typing import Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

DEFAULT_LIMIT = 10
MAX_LIMIT = 100

FILTERABLE_PRODUCT_FIELDS = {
    "category",
    "platform_type",
    "base_type",
    "product_name",
    "stripe_product_id",
}
SORTABLE_PRODUCT_FIELDS = {"created_at", "avg_rating", "product_name", "updated_at"}
RESERVED_KEYS = {"skip", "limit", "sort", "search", "homepage"}


def _non_negative_int(value, default: Optional[int]) -> Optional[int]:
    try:
        numeric = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return numeric if numeric >= 0 else default


def parse_sort(value: Optional[str]) -> List[Tuple[str, int]]:
    sort_spec: List[Tuple[str, int]] = []
    for raw_field in str(value or "").split(","):
        field = raw_field.strip()
        if not field:
            continue
        direction = 1
        if field[0] in "-+":
            direction = -1 if field[0] == "-" else 1
            field = field[1:]
        if field in SORTABLE_PRODUCT_FIELDS:
            sort_spec.append((field, direction))
    return sort_spec


def parse_product_query(args: Mapping[str, str]) -> Tuple[Dict, Dict]:
    """Translate query-string arguments into a Mongo filter and find options."""
    criteria: Dict[str, object] = {}
    for key, value in args.items():
        if key in RESERVED_KEYS or key not in FILTERABLE_PRODUCT_FIELDS:
            continue
        trimmed = str(value).strip()
        if trimmed:
            criteria[key] = trimmed

    search_term = str(args.get("search") or "").strip()
    if search_term:
        criteria["product_name"] = {
            "$regex": re.escape(search_term),
            "$options": "i",
        }

    limit = _non_negative_int(args.get("limit"), DEFAULT_LIMIT) or DEFAULT_LIMIT
    options: Dict[str, object] = {
        "skip": _non_negative_int(args.get("skip"), 0) or 0,
        "limit": min(limit, MAX_LIMIT),
    }
    sort_spec = parse_sort(args.get("sort"))
    if sort_spec:
        options["sort"] = sort_spec
    return criteria, options


def build_pagination_links(
    base_path: str, args: Mapping[str, str], skip: int, limit: int, total: int
) -> Dict[str, str]:
    """First/prev/next/last links in skip/limit terms."""
    preserved = {
        key: value for key, value in args.items() if key not in {"skip", "limit"}
    }

    def link(target_skip: int) -> str:
        query = urlencode({**preserved, "skip": target_skip, "limit": limit})
        return f"{base_path}?{query}"

    if not limit or total <= limit:
        return {}

    last_skip = (math.ceil(total / limit) - 1) * limit
    links: Dict[str, str] = {}
    if skip > 0:
        links["first"] = link(0)
        links["prev"] = link(max(skip - limit, 0))
    if skip + limit < total:
        links["next"] = link(skip + limit)
        links["last"] = link(last_skip)
    return links
