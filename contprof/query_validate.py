"""Request types of the query service and the rules that make a request valid."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, TypeVar

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_BLANK = "cannot be blank"

E = TypeVar("E", bound=IntEnum)


class QueryValidationError(ValueError):
    """Raised when a query request is invalid; errors maps field names to messages."""

    def __init__(self, message: str, errors: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.errors = dict(errors or {})


class QueryMode(IntEnum):
    """How a query selects the profile it reports on."""

    SINGLE_UNSPECIFIED = 0
    DIFF = 1
    MERGE = 2


class ReportType(IntEnum):
    """The kind of report a query returns."""

    FLAMEGRAPH_UNSPECIFIED = 0
    PPROF_UNSPECIFIED = 1


class DiffSelectionMode(IntEnum):
    """How one side of a diff selects its profile."""

    SINGLE_UNSPECIFIED = 0
    MERGE = 1


@dataclass
class SingleProfile:
    """A single profile: the first one at or after time matching the query."""

    query: str = ""
    time: datetime | None = None


@dataclass
class MergeProfile:
    """All profiles matching the query between start and end, merged into one."""

    query: str = ""
    start: datetime | None = None
    end: datetime | None = None


@dataclass
class ProfileDiffSelection:
    """One side of a diff: a single or a merged profile."""

    mode: DiffSelectionMode | int = DiffSelectionMode.SINGLE_UNSPECIFIED
    options: Any = None

    def validate(self) -> ProfileDiffSelection:
        """Raise QueryValidationError unless the selection is valid; return self."""
        errors: dict[str, str] = {}
        mode = _as_enum(DiffSelectionMode, self.mode)
        if mode is None:
            errors["mode"] = (
                "mode is not a profile diff selection mode"
                if not _is_int(self.mode)
                else "invalid diff selection mode"
            )

        if self.options is None:
            errors["options"] = _BLANK
        elif not isinstance(self.options, (SingleProfile, MergeProfile)):
            errors["options"] = (
                "profile diff selection option is not a profile diff selection option"
            )
        elif mode is None:
            errors["options"] = "invalid profile diff selection mode"
        elif not isinstance(self.options, _DIFF_OPTION_TYPES[mode]):
            errors["options"] = "invalid option for mode"
        _raise_if(errors)

        if mode is DiffSelectionMode.SINGLE_UNSPECIFIED:
            validate_single(self.options)
        else:
            validate_merge(self.options)
        return self


@dataclass
class DiffProfile:
    """Two profile selections whose difference is reported."""

    a: ProfileDiffSelection | None = None
    b: ProfileDiffSelection | None = None


@dataclass
class QueryRequest:
    """An instant query: a mode, the matching options and the report wanted."""

    mode: QueryMode | int = QueryMode.SINGLE_UNSPECIFIED
    options: Any = None
    report_type: ReportType | int = ReportType.FLAMEGRAPH_UNSPECIFIED

    def validate(self) -> QueryRequest:
        """Raise QueryValidationError unless the request is valid; return self."""
        errors: dict[str, str] = {}
        mode = _as_enum(QueryMode, self.mode)
        if mode is None:
            errors["mode"] = (
                "mode is not a query request mode"
                if not _is_int(self.mode)
                else "invalid query request mode"
            )

        if self.options is None:
            errors["options"] = _BLANK
        elif not isinstance(self.options, (SingleProfile, MergeProfile, DiffProfile)):
            errors["options"] = "query request option is not a query request option"
        elif mode is None:
            errors["options"] = "invalid query request mode"
        elif not isinstance(self.options, _QUERY_OPTION_TYPES[mode]):
            errors["options"] = "invalid option for mode"

        if _as_enum(ReportType, self.report_type) is None:
            errors["report_type"] = (
                "report type is not a report type"
                if not _is_int(self.report_type)
                else "invalid report type"
            )
        _raise_if(errors)

        if mode is QueryMode.SINGLE_UNSPECIFIED:
            validate_single(self.options)
        elif mode is QueryMode.DIFF:
            validate_diff(self.options)
        else:
            validate_merge(self.options)
        return self


@dataclass
class QueryRangeRequest:
    """A range query: the series matching query between start and end."""

    query: str = ""
    start: datetime | None = None
    end: datetime | None = None
    limit: int = 0
    extra: dict[str, Any] = field(default_factory=dict)

    def validate(self) -> QueryRangeRequest:
        """Raise QueryValidationError unless the request is valid; return self."""
        errors: dict[str, str] = {}
        _check_range(errors, self.start, self.end)
        if not self.query:
            errors["query"] = _BLANK
        _raise_if(errors)
        return self


_QUERY_OPTION_TYPES = {
    QueryMode.SINGLE_UNSPECIFIED: SingleProfile,
    QueryMode.DIFF: DiffProfile,
    QueryMode.MERGE: MergeProfile,
}

_DIFF_OPTION_TYPES = {
    DiffSelectionMode.SINGLE_UNSPECIFIED: SingleProfile,
    DiffSelectionMode.MERGE: MergeProfile,
}


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _as_enum(enum_cls: type[E], value: Any) -> E | None:
    if isinstance(value, enum_cls):
        return value
    if not _is_int(value):
        return None
    try:
        return enum_cls(value)
    except ValueError:
        return None


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def _check_range(errors: dict[str, str], start: Any, end: Any) -> None:
    if start is None:
        errors["start"] = _BLANK
    if end is None:
        errors["end"] = _BLANK
        return
    if not isinstance(end, datetime):
        errors["end"] = "end is not a timestamp"
        return
    begin = _EPOCH if not isinstance(start, datetime) else _aware(start)
    if begin > _aware(end):
        errors["end"] = "start timestamp must be before end"


def _raise_if(errors: dict[str, str]) -> None:
    if errors:
        message = "; ".join(f"{name}: {errors[name]}" for name in sorted(errors)) + "."
        raise QueryValidationError(message, errors)


def validate_single(single: SingleProfile | None) -> SingleProfile:
    """Raise QueryValidationError unless the single profile selection is complete."""
    if single is None:
        raise QueryValidationError("single must not be unset")
    errors: dict[str, str] = {}
    if single.time is None:
        errors["time"] = _BLANK
    if not single.query:
        errors["query"] = _BLANK
    _raise_if(errors)
    return single


def validate_merge(merge: MergeProfile | None) -> MergeProfile:
    """Raise QueryValidationError unless the merge selection is complete and ordered."""
    if merge is None:
        raise QueryValidationError("merge must not be unset")
    errors: dict[str, str] = {}
    _check_range(errors, merge.start, merge.end)
    if not merge.query:
        errors["query"] = _BLANK
    _raise_if(errors)
    return merge


def validate_diff(diff: DiffProfile | None) -> DiffProfile:
    """Raise QueryValidationError unless both sides of the diff are valid selections."""
    if diff is None:
        raise QueryValidationError("diff must not be unset")
    errors: dict[str, str] = {}
    if diff.a is None:
        errors["a"] = _BLANK
    if diff.b is None:
        errors["b"] = _BLANK
    _raise_if(errors)
    diff.a.validate()
    diff.b.validate()
    return diff