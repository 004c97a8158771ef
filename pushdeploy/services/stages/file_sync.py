"""
File sync stage.

Publishes the local source tree to the target's working directory. With
``checkout = true`` the local repository is first moved to the pushed
commit, so the published tree is exactly what triggered the run.
"""

import asyncio
from pathlib import Path

from pushdeploy.exceptions.domain import LocalCommandError
from pushdeploy.models.base import StageKind
from pushdeploy.utils.logger import logger

from .base import StageContext, StageOutcome, register_executor

# Never published, whatever the definition says.
ALWAYS_EXCLUDED = (".git",)


async def run_local(*args: str, cwd: Path) -> tuple[int, str]:
    """Run a local command, returning exit code and combined output."""
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        stdout, _ = await process.communicate()
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise
    return process.returncode or 0, stdout.decode(errors="replace")


async def checkout_commit(root: Path, commit_sha: str) -> str:
    """Force the working tree at ``root`` to ``commit_sha``.

    Raises:
        LocalCommandError: If git cannot check out the commit
    """
    code, output = await run_local("git", "fetch", "--quiet", "--all", cwd=root)
    if code != 0:
        logger.warning(f"git fetch in {root} failed, using local objects: {output.strip()}")
    code, output = await run_local("git", "checkout", "--force", "--detach", commit_sha, cwd=root)
    if code != 0:
        raise LocalCommandError(f"git checkout {commit_sha} failed in {root}: {output.strip()}")
    return output


def resolve_source(ctx: StageContext) -> Path:
    if ctx.stage.source:
        source = Path(ctx.stage.source).expanduser()
        return source if source.is_absolute() else ctx.source_root / source
    return ctx.source_root


@register_executor(StageKind.file_sync)
async def sync_files(ctx: StageContext) -> StageOutcome:
    ctx.require("remote_working_dir")
    source = resolve_source(ctx)

    if ctx.stage.checkout:
        await checkout_commit(source, ctx.trigger.commit_sha)

    report = await ctx.remote.sync_tree(
        source,
        ctx.bindings["remote_working_dir"],
        exclude=ALWAYS_EXCLUDED + tuple(ctx.stage.exclude),
        delete=ctx.stage.delete,
        timeout=ctx.stage.timeout_seconds,
    )
    lines = [f"+ {path}" for path in report.changed_files]
    lines += [f"- {path}" for path in report.deleted_files]
    return StageOutcome(
        exit_code=0,
        output="\n".join(lines),
        bytes_transferred=report.bytes_transferred,
        changed_files=len(report.changed_files),
        detail=(
            f"{len(report.changed_files)} files changed, {len(report.deleted_files)} deleted"
            if report.changed
            else "Remote tree already up to date"
        ),
    )
