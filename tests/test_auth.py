from __future__ import annotations

from pathlib import Path

import pytest

from dealflow.auth import SubjectOwnershipAuthorizer
from dealflow.storage.repo import StorageRepo
from dealflow.utils.error_taxonomy import AuthorizationError


def test_owner_is_authorized(tmp_path: Path) -> None:
    repo = StorageRepo(tmp_path / "dealflow.sqlite3")
    subject = repo.create_subject(owner_id="user-1", name="Acme")

    authorized = SubjectOwnershipAuthorizer(repo).authorize(
        subject_id=subject.subject_id, user_id="user-1"
    )

    assert authorized.subject_id == subject.subject_id


@pytest.mark.parametrize(
    ("user_id", "subject_key", "status_code"),
    [
        (None, "own", 401),
        ("   ", "own", 401),
        ("user-2", "own", 403),
        ("user-1", "missing", 403),
    ],
)
def test_unauthorized_callers_are_rejected(
    tmp_path: Path, user_id: str | None, subject_key: str, status_code: int
) -> None:
    repo = StorageRepo(tmp_path / "dealflow.sqlite3")
    subject = repo.create_subject(owner_id="user-1", name="Acme")
    subject_id = subject.subject_id if subject_key == "own" else "missing"

    with pytest.raises(AuthorizationError) as caught:
        SubjectOwnershipAuthorizer(repo).authorize(subject_id=subject_id, user_id=user_id)

    assert caught.value.status_code == status_code
