"""One-click provisioning of a portal.

Runs connector registration, activation on every Open Line, robot and SMS
provider registration in that order. A failing step is recorded and the run
moves on: the later steps do not depend on each other, and "connector
active, robot unavailable" is a normal end state for portals that did not
grant the automation scope.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, field

from sqlalchemy.orm import Session

from app.logging import get_logger
from app.metrics import observe_setup
from app.services.bitrix24 import automation, identity, oauth, state
from app.services.bitrix24.channels import apply_activation, fetch_lines
from app.services.bitrix24.connector import register_remote
from app.services.bitrix24.errors import Bitrix24Error, RemoteApiError
from app.services.bitrix24.locks import commit, integration_lock
from app.services.common import utcnow

logger = get_logger(__name__)


@dataclass
class StepResult:
    name: str
    ok: bool
    detail: str | None = None


@dataclass
class SetupReport:
    connector_registered: bool = False
    lines_activated: int = 0
    lines_total: int = 0
    sms_provider_registered: bool = False
    robot_registered: bool = False
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    steps: list[StepResult] = field(default_factory=list)

    @property
    def status(self) -> str:
        if not self.errors and not self.warnings:
            return "success"
        if any(step.ok for step in self.steps):
            return "partial"
        return "failed"

    def record(self, name: str, ok: bool, detail: str | None = None) -> None:
        self.steps.append(StepResult(name=name, ok=ok, detail=detail))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status
        return data


def _optional_step(
    report: SetupReport,
    name: str,
    run: Callable[[], dict],
    scope_message: str,
) -> bool:
    try:
        run()
    except RemoteApiError as exc:
        message = scope_message if exc.is_scope_error else f"{name}: {exc.detail}"
        report.errors.append(message)
        report.record(name, False, message)
        return False
    except Bitrix24Error as exc:
        report.errors.append(f"{name}: {exc.detail}")
        report.record(name, False, exc.detail)
        return False
    report.record(name, True)
    return True


def auto_setup(db: Session, integration_id, instance_id=None) -> dict:
    report = SetupReport()
    with integration_lock(db, integration_id) as integration:
        if instance_id:
            try:
                instance = identity.get_workspace_instance(db, integration.workspace_id, instance_id)
                integration.instance_id = instance.id
            except Bitrix24Error as exc:
                report.warnings.append(f"instance: {exc.detail}")

        # Without a working client no remote step can run; that is a total failure
        try:
            client = oauth.portal_client(db, integration)
        except Bitrix24Error as exc:
            report.errors.append(f"authorization: {exc.detail}")
            report.record("authorization", False, exc.detail)
            return _finish(db, integration, report)

        try:
            register_remote(client, integration)
            report.connector_registered = True
            report.record("register_connector", True, integration.connector_id)
        except Bitrix24Error as exc:
            report.errors.append(f"connector registration failed: {exc.detail}")
            report.record("register_connector", False, exc.detail)

        # Lines are listed even without a connector so the report shows what activation would cover
        try:
            lines = fetch_lines(client)
        except Bitrix24Error as exc:
            lines = []
            report.errors.append(f"listing lines failed: {exc.detail}")
            report.record("list_lines", False, exc.detail)
        else:
            report.record("list_lines", True, f"{len(lines)} lines")
            if not lines:
                report.warnings.append("no open lines found, create one and activate the connector on it")
        report.lines_total = len(lines)

        if report.connector_registered:
            for line in lines:
                step = f"activate_line_{line['id']}"
                try:
                    outcome = apply_activation(client, integration, line["id"], True)
                except Bitrix24Error as exc:
                    report.errors.append(f"line {line['id']} activation failed: {exc.detail}")
                    report.record(step, False, exc.detail)
                    continue
                report.lines_activated += 1
                report.warnings.extend(outcome["warnings"])
                report.record(step, True)
            # Keep what we have so far even if a later step blows up the session
            commit(db, integration)

        report.robot_registered = _optional_step(
            report,
            "register_robot",
            lambda: automation.register_robot(db, integration.id),
            automation.ROBOT_SCOPE_UNAVAILABLE,
        )
        report.sms_provider_registered = _optional_step(
            report,
            "register_sms_provider",
            lambda: automation.register_sms_provider(db, integration.id),
            automation.SMS_SCOPE_UNAVAILABLE,
        )
        return _finish(db, integration, report)


def _finish(db: Session, integration, report: SetupReport) -> dict:
    data = report.to_dict()
    if report.connector_registered:
        integration.auto_setup_completed = True
    integration.last_setup_report = {**data, "ran_at": utcnow().isoformat()}
    integration.last_sync_at = utcnow()
    commit(db, integration)
    observe_setup(report.status)
    logger.info(
        "bitrix24_auto_setup integration_id=%s status=%s connector=%s lines=%s/%s robot=%s sms=%s",
        integration.id,
        report.status,
        report.connector_registered,
        report.lines_activated,
        report.lines_total,
        report.robot_registered,
        report.sms_provider_registered,
    )
    data["state"] = state.describe(integration)
    return data
