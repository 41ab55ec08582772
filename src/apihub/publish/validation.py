from __future__ import annotations

from collections import Counter

from apihub.core.errors import ValidationError
from apihub.domain.models import BuildConfig, BuildResult


def invalid_result(error: str) -> ValidationError:
    return ValidationError(
        "Invalid build result: $error", code="InvalidBuildResult", params={"error": error}
    )


def _duplicates(values: list[str]) -> list[str]:
    return sorted(value for value, count in Counter(values).items() if count > 1)


def validate_result(config: BuildConfig, result: BuildResult) -> None:
    """Structural checks of a builder result against the config it was built from."""

    info = result.version
    if info.package_id != config.package_id:
        raise invalid_result(
            f"packageId '{info.package_id}' does not match build config '{config.package_id}'"
        )
    if info.version != config.version:
        raise invalid_result(f"version '{info.version}' does not match build config '{config.version}'")
    if info.migration_build != config.migration_build:
        raise invalid_result("migrationBuild flag does not match build config")

    duplicated_files = _duplicates([doc.file_id for doc in result.documents])
    if duplicated_files:
        raise invalid_result(f"duplicate fileIds {duplicated_files}")
    duplicated_slugs = _duplicates([doc.slug for doc in result.documents])
    if duplicated_slugs:
        raise invalid_result(f"duplicate slugs {duplicated_slugs}")
    duplicated_operations = _duplicates([op.operation_id for op in result.operations])
    if duplicated_operations:
        raise invalid_result(f"duplicate operationIds {duplicated_operations}")

    known_operations = {op.operation_id for op in result.operations}
    for document in result.documents:
        unknown = sorted(set(document.operation_ids) - known_operations)
        if unknown:
            raise invalid_result(f"document '{document.file_id}' lists unknown operations {unknown}")

    for blob in result.document_blobs:
        if not blob.checksum:
            raise invalid_result("document blob without checksum")
    if result.source_archive is not None and not result.source_archive.checksum:
        raise invalid_result("source archive without checksum")


def missing_blob_checksums(result: BuildResult) -> set[str]:
    """Document checksums whose bytes the result does not carry."""

    carried = {blob.checksum for blob in result.document_blobs}
    return {doc.checksum for doc in result.documents} - carried


def missing_operation_hashes(result: BuildResult) -> set[str]:
    """Operation hashes whose parsed data the result does not carry."""

    carried = {data.data_hash for data in result.operation_data}
    return {op.data_hash for op in result.operations} - carried
