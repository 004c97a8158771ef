"""Permission repair: make the remote working directory exist with the right owner and mode."""

from pushdeploy.models.base import StageKind

from .base import StageContext, StageOutcome, register_executor

DEFAULT_COMMAND = (
    "mkdir -p {remote_working_dir} "
    "&& chown -R {owner} {remote_working_dir} "
    "&& chmod {mode} {remote_working_dir}"
)


@register_executor(StageKind.permission_repair)
async def repair_permissions(ctx: StageContext) -> StageOutcome:
    ctx.require("remote_working_dir", "owner")
    result = await ctx.execute(ctx.stage.command or DEFAULT_COMMAND)
    return StageOutcome.from_command(
        result,
        detail=f"{ctx.bindings['remote_working_dir']} owned by {ctx.bindings['owner']} "
        f"with mode {ctx.bindings['mode']}",
    )
