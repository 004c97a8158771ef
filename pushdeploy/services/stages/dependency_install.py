"""Dependency install stage."""

from pushdeploy.models.base import StageKind

from .base import StageContext, StageOutcome, register_executor

DEFAULT_COMMAND = "cd {remote_working_dir} && python3 -m pip install -r requirements.txt"


@register_executor(StageKind.dependency_install)
async def install_dependencies(ctx: StageContext) -> StageOutcome:
    ctx.require("remote_working_dir")
    result = await ctx.execute(ctx.stage.command or DEFAULT_COMMAND)
    return StageOutcome.from_command(result)
