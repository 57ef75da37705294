from __future__ import annotations

import logging
from collections.abc import Callable

from nas_webapp.driver import DriverError
from nas_webapp.errors import UnknownAppError, UnknownBundleError
from nas_webapp.models import BUNDLE_APP_PREFIX, AppTask
from nas_webapp.progress import ActionFailed, ProgressScope
from nas_webapp.registry import AppDefinition, AppRegistry

logger = logging.getLogger("nas_webapp.bundles")

MemberInstaller = Callable[[AppDefinition, ProgressScope], None]


class BundleOrchestrator:
    """Installs a bundle's members one after another inside a single task.

    The first failing member stops the run; members installed before it are
    left in place.
    """

    def __init__(self, *, registry: AppRegistry, install_member: MemberInstaller) -> None:
        self.registry = registry
        self.install_member = install_member

    def run(self, task: AppTask, scope: ProgressScope) -> str:
        members = task.member_app_ids
        if not members:
            raise ActionFailed("bundle has no member apps")
        bundle_id = task.app_id.removeprefix(BUNDLE_APP_PREFIX)
        try:
            bundle_name = self.registry.get_bundle(bundle_id).name
        except UnknownBundleError:
            bundle_name = bundle_id

        count = len(members)
        scope.log(f"Installing bundle {bundle_name}: {', '.join(members)}")
        for index, app_id in enumerate(members):
            step = scope.child(index, count)
            step.status(f"[{index + 1}/{count}] installing {app_id}")
            step.log(f"[{index + 1}/{count}] {app_id}")
            try:
                self.install_member(self.registry.get_app(app_id), step)
            except Exception as exc:
                if isinstance(exc, ActionFailed):
                    detail = exc.detail
                elif isinstance(exc, (DriverError, UnknownAppError)):
                    detail = str(exc)
                else:
                    logger.exception("bundle member crashed task_id=%s app_id=%s", task.id, app_id)
                    detail = f"unexpected error: {exc}"
                remaining = members[index + 1 :]
                if remaining:
                    scope.log(f"Skipping remaining apps: {', '.join(remaining)}")
                logger.info(
                    "bundle member failed task_id=%s bundle=%s app_id=%s error=%s",
                    task.id,
                    bundle_id,
                    app_id,
                    detail,
                )
                raise ActionFailed(
                    f"{app_id}: {detail}",
                    message=f"bundle install failed at {app_id}",
                ) from exc
        return f"bundle {bundle_name} installed"
