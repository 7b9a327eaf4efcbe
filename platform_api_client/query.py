from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlencode


class BaseQuery:
    """Base class for platform queries.

    Supports customizable return fields, substring searches, sorting, and
    paging. Fields that the query type does not support are silently
    ignored, as are non-positive limits and negative offsets.
    """

    def __init__(self, supported_fields: Iterable[str]):
        self._supported_fields = list(supported_fields)
        self.fields: List[str] = []
        self.search: List[str] = []
        self.sort: Optional[str] = None
        self.offset: Optional[int] = None
        self.limit: Optional[int] = None

    @property
    def supported_fields(self) -> List[str]:
        return list(self._supported_fields)

    def add_field(self, field: str) -> "BaseQuery":
        if self._is_supported(field) and field not in self.fields:
            self.fields.append(field)
        return self

    def add_fields(self, fields: Iterable[str]) -> "BaseQuery":
        for field in fields:
            self.add_field(field)
        return self

    def add_all_fields(self) -> "BaseQuery":
        return self.add_fields(self._supported_fields)

    def add_search(self, field: str, search_str: str) -> "BaseQuery":
        if self._is_supported(field):
            self.search.append(f"{field}:{search_str}")
        return self

    def add_search_or(self, field: str, search_strs: Iterable[str]) -> "BaseQuery":
        return self.add_search(field, "|".join(search_strs))

    def sort_by(self, field: str, descending: bool = True) -> "BaseQuery":
        if self._is_supported(field):
            self.sort = f"{field}:{'desc' if descending else 'asc'}"
        return self

    def set_offset(self, offset) -> "BaseQuery":
        offset = _to_int(offset)
        if offset is not None and offset >= 0:
            self.offset = offset
        return self

    def set_limit(self, limit) -> "BaseQuery":
        limit = _to_int(limit)
        if limit is not None and limit > 0:
            self.limit = limit
        return self

    def _extra_params(self) -> List[Tuple[str, str]]:
        return []

    def to_params(self) -> List[Tuple[str, str]]:
        """Query-string pairs, with list values in indexed form (``fields[0]=id``)"""
        params: List[Tuple[str, str]] = []
        for key in ("fields", "search"):
            params.extend((f"{key}[{i}]", val) for i, val in enumerate(getattr(self, key)))
        if self.sort:
            params.append(("sort", self.sort))
        # an offset of 0 is the server default
        if self.offset:
            params.append(("offset", str(self.offset)))
        if self.limit:
            params.append(("limit", str(self.limit)))
        params.extend(self._extra_params())
        return params

    def __str__(self) -> str:
        return urlencode(self.to_params())

    def _is_supported(self, field: str) -> bool:
        return field in self._supported_fields


def _to_int(val) -> Optional[int]:
    try:
        return int(val)
    except (TypeError, ValueError):
        return None


class AnalyticsQuery(BaseQuery):
    def __init__(self):
        super().__init__(
            [
                "id",
                "name",
                "version",
                "upload_date",
                "description",
                "scope",
                "supports_cpu",
                "supports_gpu",
                "pending",
            ]
        )
        self.all_versions = False

    def set_all_versions(self, all_versions: bool) -> "AnalyticsQuery":
        self.all_versions = all_versions
        return self

    def _extra_params(self) -> List[Tuple[str, str]]:
        return [("all_versions", "true")] if self.all_versions else []


class DataQuery(BaseQuery):
    def __init__(self):
        super().__init__(
            ["id", "name", "encoding", "type", "size", "upload_date", "expiration_date"]
        )


class JobsQuery(BaseQuery):
    def __init__(self):
        super().__init__(
            [
                "id",
                "name",
                "state",
                "archived",
                "upload_date",
                "analytic_id",
                "auto_start",
                "compute_mode",
                "start_date",
                "completion_date",
                "fail_date",
                "failure_type",
            ]
        )
