import pytest

from app.roles import SUPPORTED_ROLES, validate_role


@pytest.mark.unit
@pytest.mark.parametrize("role", SUPPORTED_ROLES)
def test_supported_role_is_accepted(role: str) -> None:
    validated = validate_role(role)
    assert validated.name == role


@pytest.mark.unit
def test_invalid_role_rejected_with_actionable_message() -> None:
    with pytest.raises(ValueError) as exc_info:
        validate_role("worker-unknown")

    message = str(exc_info.value)
    assert "Unsupported role 'worker-unknown'" in message
    assert "Supported roles:" in message
    assert "migrations are applied externally" in message


@pytest.mark.unit
def test_supported_roles_cover_api_and_both_sweepers() -> None:
    assert SUPPORTED_ROLES == ("api", "worker-reaper", "worker-materializer")


@pytest.mark.unit
@pytest.mark.parametrize(
    ("role", "sweeps", "owns_executor"),
    [
        ("api", ("reaper", "materializer"), True),
        ("worker-reaper", ("reaper",), False),
        ("worker-materializer", ("materializer",), False),
    ],
)
def test_role_carries_its_sweeps_and_executor_ownership(
    role: str,
    sweeps: tuple[str, ...],
    owns_executor: bool,
) -> None:
    validated = validate_role(role)
    assert validated.sweeps == sweeps
    assert validated.owns_executor is owns_executor
