"""Generic command stage."""

from pushdeploy.models.base import StageKind

from .base import StageContext, StageOutcome, register_executor


@register_executor(StageKind.command)
async def run_command(ctx: StageContext) -> StageOutcome:
    # Definitions reject command stages without a command
    result = await ctx.execute(ctx.stage.command or "")
    return StageOutcome.from_command(result)
