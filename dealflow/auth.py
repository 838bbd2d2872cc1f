from __future__ import annotations

import logging
from typing import Protocol

from dealflow.storage.models import SubjectRecord
from dealflow.storage.repo import StorageRepo
from dealflow.utils.error_taxonomy import AuthorizationError

logger = logging.getLogger(__name__)


class SubjectAuthorizer(Protocol):
    def authorize(self, *, subject_id: str, user_id: str | None) -> SubjectRecord: ...


class SubjectOwnershipAuthorizer:
    """Allows a caller to analyze only subjects they own.

    Unknown and foreign subjects get the same 403 so callers cannot probe
    for existing ids.
    """

    def __init__(self, repo: StorageRepo) -> None:
        self._repo = repo

    def authorize(self, *, subject_id: str, user_id: str | None) -> SubjectRecord:
        if not user_id or not user_id.strip():
            raise AuthorizationError("Missing caller identity", status_code=401)

        subject = self._repo.get_subject(subject_id)
        if subject is None or subject.owner_id != user_id:
            logger.warning(
                "Access denied for user %s on subject %s", user_id, subject_id
            )
            raise AuthorizationError(
                "Subject not found or access denied", status_code=403
            )
        return subject
