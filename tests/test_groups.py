import pytest

from apihub.core.errors import ConflictError, ValidationError
from apihub.domain.models import ApiType
from apihub.packages.store import PackageStore
from apihub.versions.groups import OperationGroupStore

from factories import PACKAGE_ID, VERSION, make_result, publish, rest_operation


@pytest.mark.asyncio
async def test_manual_group_lifecycle(session, session_factory, settings, package):
    await publish(session, settings, make_result())
    groups = OperationGroupStore(session)

    group = await groups.create_group(PACKAGE_ID, VERSION, 1, ApiType.rest, "core", description="Core")
    assert await groups.set_group_operations(group.group_id, [(PACKAGE_ID, VERSION, 1, "get-users")]) == 1
    with pytest.raises(ValidationError) as exc_info:
        await groups.set_group_operations(group.group_id, [(PACKAGE_ID, VERSION, 1, "missing")])
    assert exc_info.value.code == "GroupOperationsNotFound"

    listed = await groups.list_groups(PACKAGE_ID, VERSION, 1)
    assert [(g.group_name, g.operations_count, g.description) for g in listed] == [("core", 1, "Core")]

    async with session_factory() as fresh:
        with pytest.raises(ConflictError) as exc_info:
            await OperationGroupStore(fresh).create_group(PACKAGE_ID, VERSION, 1, ApiType.rest, "core")
        assert exc_info.value.code == "OperationGroupAlreadyExists"

    await groups.delete_group(group.group_id)
    assert await groups.list_groups(PACKAGE_ID, VERSION, 1) == []


@pytest.mark.asyncio
async def test_groups_carry_over_to_next_version(session, settings, package):
    await publish(session, settings, make_result())
    groups = OperationGroupStore(session)
    group = await groups.create_group(PACKAGE_ID, VERSION, 1, ApiType.rest, "core")
    await groups.set_group_operations(group.group_id, [(PACKAGE_ID, VERSION, 1, "get-users")])

    operations = [
        rest_operation("get-users", "hash-users", "/api/users/list"),
        rest_operation("get-orders", "hash-orders", "/api/orders/list"),
    ]
    await publish(
        session, settings, make_result(version="2.0", previous_version=VERSION, operations=operations)
    )

    carried = await groups.get_group(PACKAGE_ID, "2.0", 1, ApiType.rest, "core")
    assert carried is not None
    assert await groups.get_group_operation_ids(carried.group_id) == [
        (PACKAGE_ID, "2.0", 1, "get-users")
    ]


@pytest.mark.asyncio
async def test_autogenerated_groups_are_read_only(session, settings, package):
    await PackageStore(session).set_grouping_prefixes(PACKAGE_ID, rest="/api/{group}/")
    await publish(session, settings, make_result())
    groups = OperationGroupStore(session)

    generated = await groups.get_group(PACKAGE_ID, VERSION, 1, ApiType.rest, "users")

    assert generated is not None and generated.autogenerated
    with pytest.raises(ValidationError) as exc_info:
        await groups.set_group_operations(generated.group_id, [])
    assert exc_info.value.code == "AutogeneratedGroupReadOnly"
