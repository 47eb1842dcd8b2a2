from __future__ import annotations

import importlib

ulid_module = importlib.import_module("ulid")


def new_submission_id() -> str:
    return f"sub_{ulid_module.new().str}"


def new_person_id() -> str:
    return f"per_{ulid_module.new().str}"


def new_notification_id() -> str:
    return f"ntf_{ulid_module.new().str}"


def new_work_item_id() -> str:
    return f"wi_{ulid_module.new().str}"


def new_job_id() -> str:
    return f"job_{ulid_module.new().str}"
