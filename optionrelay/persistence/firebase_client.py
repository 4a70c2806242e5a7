from __future__ import annotations

import os
import threading
from typing import Optional

import firebase_admin
from firebase_admin import credentials, firestore

from optionrelay.common.errors import StoreError


def _is_local_execution() -> bool:
    if (os.getenv("ENV") or "").strip().lower() == "local":
        return True
    if (os.getenv("K_SERVICE") or "").strip() or (os.getenv("CLOUD_RUN_JOB") or "").strip():
        return False
    return not any(str(k).startswith("GAE_") for k in os.environ)


def require_firestore_emulator_or_allow_prod(*, caller: str) -> None:
    """
    Fail closed locally unless FIRESTORE_EMULATOR_HOST is set or ALLOW_PROD_FIRESTORE=1.
    """
    if not _is_local_execution():
        return
    if (os.getenv("FIRESTORE_EMULATOR_HOST") or "").strip():
        return
    if (os.getenv("ALLOW_PROD_FIRESTORE") or "").strip() == "1":
        return
    raise StoreError(
        "refusing to use production Firestore from local execution; "
        "set FIRESTORE_EMULATOR_HOST or ALLOW_PROD_FIRESTORE=1",
        caller=caller,
    )


def _resolve_project_id(explicit_project_id: Optional[str] = None) -> Optional[str]:
    return (
        explicit_project_id
        or os.getenv("FIREBASE_PROJECT_ID")
        or os.getenv("GOOGLE_CLOUD_PROJECT")
        or None
    )


_init_lock = threading.Lock()


def init_firebase_admin(*, project_id: Optional[str] = None) -> None:
    """
    Initialize the Firebase Admin SDK once per process with Application Default Credentials.
    """
    require_firestore_emulator_or_allow_prod(caller="optionrelay.persistence.firebase_client")

    if firebase_admin._apps:
        return
    with _init_lock:
        if firebase_admin._apps:
            return
        options = {}
        resolved = _resolve_project_id(project_id)
        if resolved:
            options["projectId"] = resolved
        try:
            firebase_admin.initialize_app(credentials.ApplicationDefault(), options or None)
        except Exception as e:
            raise StoreError(
                "failed to initialize Firebase Admin SDK with Application Default Credentials"
            ) from e


def get_firestore_client(*, project_id: Optional[str] = None):
    init_firebase_admin(project_id=project_id)
    return firestore.client()
