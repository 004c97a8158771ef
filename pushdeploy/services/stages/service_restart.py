"""
Service restart stage.

Reloads the supervisor, restarts the service and then polls its status
until it reports ``active``. A restart command that exits 0 is not enough:
a service that never becomes active fails the stage with
``HealthCheckTimeout``, also when the stage deadline ends the polling
before the health window does.
"""

import asyncio

from pushdeploy.exceptions.domain import HealthCheckTimeout, RemoteCommandFailure
from pushdeploy.models.base import StageKind
from pushdeploy.utils.logger import logger

from .base import StageContext, StageOutcome, register_executor

DEFAULT_RELOAD = "sudo systemctl daemon-reload"
DEFAULT_RESTART = "sudo systemctl restart {service_name}"
DEFAULT_STATUS = "systemctl is-active {service_name}"
ACTIVE = "active"


async def wait_until_active(ctx: StageContext, status_command: str) -> str:
    """Poll the status command until it prints ``active``.

    Non-active statuses and non-zero exits inside the window are expected
    while the service starts. The window is the health timeout, cut short
    by the stage deadline.

    Raises:
        HealthCheckTimeout: If the window elapses first
    """
    stage = ctx.stage
    service = ctx.bindings["service_name"]
    loop = asyncio.get_running_loop()
    started = loop.time()
    deadline = started + stage.health_timeout_seconds
    if ctx.deadline is not None:
        deadline = min(deadline, ctx.deadline)
    ctx.health_status = ""
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise HealthCheckTimeout(service, deadline - started, ctx.health_status)
        try:
            result = await ctx.remote.execute(
                ctx.render(status_command), timeout=min(remaining, stage.timeout_seconds)
            )
            ctx.health_status = result.output.strip()
        except RemoteCommandFailure as e:
            ctx.health_status = e.output.strip() or f"exit {e.exit_code}"
        if ctx.health_status == ACTIVE:
            return ctx.health_status
        logger.debug(f"Service {service} is '{ctx.health_status}', polling again")
        await asyncio.sleep(min(stage.poll_interval_seconds, max(deadline - loop.time(), 0)))


@register_executor(StageKind.service_restart)
async def restart_service(ctx: StageContext) -> StageOutcome:
    ctx.require("service_name")
    stage = ctx.stage

    outputs = []
    reload = await ctx.execute(stage.reload_command or DEFAULT_RELOAD)
    outputs.append(reload.output)
    restart = await ctx.execute(stage.command or DEFAULT_RESTART)
    outputs.append(restart.output)

    status = await wait_until_active(ctx, stage.status_command or DEFAULT_STATUS)
    outputs.append(status)
    return StageOutcome(
        exit_code=restart.exit_code,
        output="\n".join(o for o in outputs if o),
        truncated=reload.truncated or restart.truncated,
        detail=f"Service {ctx.bindings['service_name']} is {status}",
    )
