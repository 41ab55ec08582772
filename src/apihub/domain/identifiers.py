"""Deterministic identifiers and address parsing."""

from __future__ import annotations

import hashlib
import re

from apihub.core.errors import ValidationError, invalid_revision_format

GROUPING_PREFIX_WILDCARD = "{group}"


def _digest(unique: str) -> str:
    return hashlib.md5(unique.encode("utf-8")).hexdigest()  # noqa: S324


def make_comparison_id(
    package_id: str,
    version: str,
    revision: int,
    previous_package_id: str,
    previous_version: str,
    previous_revision: int,
) -> str:
    """Address of the cached diff between two revisions."""
    return _digest(
        f"{package_id}@{version}@{revision}@{previous_package_id}@{previous_version}@{previous_revision}"
    )


def make_operation_group_id(
    package_id: str, version: str, revision: int, api_type: str, group_name: str
) -> str:
    return _digest(f"{package_id}@{version}@{revision}@{api_type}@{group_name}")


def split_version_revision(version: str) -> tuple[str, int]:
    """Parse ``v`` or ``v@r``.

    A bare version yields revision 0, meaning "latest undeleted revision".
    """
    if "@" not in version:
        return version, 0
    parts = version.split("@")
    if len(parts) != 2 or not parts[0]:
        raise invalid_revision_format(version)
    name, raw_revision = parts
    try:
        revision = int(raw_revision)
    except ValueError as exc:
        raise invalid_revision_format(version, debug=str(exc)) from exc
    if revision <= 0:
        raise invalid_revision_format(version)
    return name, revision


def format_version_revision(version: str, revision: int) -> str:
    return f"{version}@{revision}"


def parent_package_id(package_id: str) -> str | None:
    """Prefix before the last dot, or None for a workspace."""
    if "." not in package_id:
        return None
    return package_id.rsplit(".", 1)[0]


def workspace_id(package_id: str) -> str:
    return package_id.split(".", 1)[0]


def validate_package_id(package_id: str) -> None:
    if not package_id or any(not segment for segment in package_id.split(".")):
        raise ValidationError(
            "Package id '$packageId' must consist of non-empty dot-separated segments",
            code="InvalidPackageId",
            params={"packageId": package_id},
        )


def make_grouping_prefix_regex(grouping_prefix: str) -> str:
    """Turn ``/api/{group}/`` into an anchored regex capturing the group name."""
    escaped = re.escape(grouping_prefix)
    escaped = escaped.replace(re.escape(GROUPING_PREFIX_WILDCARD), "(.*?)", 1)
    return "^" + escaped


def validate_grouping_prefix(grouping_prefix: str) -> None:
    if not grouping_prefix:
        return
    if not grouping_prefix.endswith("/"):
        raise ValidationError(
            "Invalid grouping prefix: $error",
            code="InvalidGroupingPrefix",
            params={"error": "groupingPrefix must end with /"},
        )
    if grouping_prefix.count(GROUPING_PREFIX_WILDCARD) != 1:
        raise ValidationError(
            "Invalid grouping prefix: $error",
            code="InvalidGroupingPrefix",
            params={"error": f"groupingPrefix must contain exactly one {GROUPING_PREFIX_WILDCARD}"},
        )


def extract_group_name(pattern: re.Pattern[str], value: str) -> str | None:
    """First capture of ``pattern`` in ``value``, mirroring SQL ``substring(x, regex)``."""
    match = pattern.search(value)
    if not match:
        return None
    if match.groups():
        return match.group(1) or None
    return match.group(0) or None
