"""
CLI interface for tally.

Usage:
    tally issue add "Crash on startup"
    tally list
    tally issue close '#ABC123'
    tally sync
"""

import atexit
import json
import os
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import Tracker
from .config import load_config, save_config
from .errors import NotFoundError, TallyError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import RECORD_KINDS, Comment, Issue, Project, Record

# Configure quiet mode by default (suppress verbose library output)
# Set TALLY_VERBOSE=1 to enable debug mode via environment
if os.environ.get("TALLY_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from . import __version__
        print(f"tally {__version__}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_repo_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _repo_callback(value: Optional[Path]):
    global _repo_override
    _repo_override = value


app = typer.Typer(
    name="tally",
    help="Issue tracking in git notes.",
    no_args_is_help=True,
    rich_markup_mode=None,
)

project_app = typer.Typer(name="project", help="Create and list projects.", rich_markup_mode=None)
issue_app = typer.Typer(name="issue", help="Create, show and change issues.", rich_markup_mode=None)
comment_app = typer.Typer(name="comment", help="Comment on projects and issues.", rich_markup_mode=None)
app.add_typer(project_app)
app.add_typer(issue_app)
app.add_typer(comment_app)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr (shows git commands)",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    repo: Annotated[Optional[Path], typer.Option(
        "--repo", "-C",
        envvar="TALLY_REPO",
        help="Run as if started in this directory",
        callback=_repo_callback,
        is_eager=True,
    )] = None,
):
    """Issue tracking in git notes."""


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _get_tracker() -> Tracker:
    """Open the tracker for the current repository, reporting errors cleanly."""
    try:
        tr = Tracker(_repo_override)
    except (TallyError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(tr.close)
    return tr


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(1)


def _status(record: Record) -> str:
    if record.is_deleted:
        return "deleted"
    return "closed" if getattr(record, "closed", "false") == "true" else "open"


def _format_line(record: Record) -> str:
    """One-line summary: '#CODE  open    title'."""
    if isinstance(record, Comment):
        when = record.created_at.strftime("%Y-%m-%d %H:%M") if record.created_at else "?"
        first_line = record.content.splitlines()[0] if record.content else ""
        return f"{when}  {record.author}: {first_line}"
    label = f"#{record.shortcode}" if record.shortcode else record.id[:8]
    return f"{label:8}  {_status(record):7} {record.title}"


def _format_detail(record: Record, comments: list[Comment]) -> str:
    lines = [_format_line(record), ""]
    lines.append(f"id:      {record.id}")
    lines.append(f"author:  {record.author}")
    if record.created_at:
        lines.append(f"created: {record.created_at.isoformat()}")
    if record.updated_at:
        lines.append(f"updated: {record.updated_at.isoformat()}")
    if isinstance(record, Issue) and record.parent_id:
        lines.append(f"project: {record.parent_id}")
    if record.description:
        lines.extend(["", record.description])
    if comments:
        lines.extend(["", "Comments:"])
        lines.extend(f"  {_format_line(c)}" for c in comments)
    return "\n".join(lines)


def _emit(records: list[Record]) -> None:
    if _get_json_output():
        typer.echo(json.dumps([r.to_dict() for r in records], indent=2))
    elif not records:
        typer.echo("No results.")
    else:
        for record in records:
            typer.echo(_format_line(record))


def _resolve(tr: Tracker, kind: type[Record], ref: str, include_deleted: bool = False) -> Record:
    try:
        return tr.resolve(kind, ref, include_deleted=include_deleted)
    except TallyError as e:
        _fail(str(e))


def _resolve_parent(tr: Tracker, ref: str) -> Record:
    """An issue or project, whichever ref names."""
    for kind in (Issue, Project):
        try:
            return tr.resolve(kind, ref)
        except NotFoundError:
            continue
        except TallyError as e:
            _fail(str(e))
    _fail(f"No issue or project matching {ref!r}")


def _run(action):
    """Run a tracker call, turning expected failures into a clean exit."""
    try:
        return action()
    except TallyError as e:
        _fail(str(e))


# -----------------------------------------------------------------------------
# Projects
# -----------------------------------------------------------------------------

@project_app.command("add")
def project_add(
    title: Annotated[str, typer.Argument(help="Project title")],
    description: Annotated[str, typer.Option(
        "--description", "-d", help="Longer description"
    )] = "",
):
    """Create a project."""
    tr = _get_tracker()
    project = _run(lambda: tr.create_project(title, description))
    _emit([project])


@project_app.command("list")
def project_list(
    all_: Annotated[bool, typer.Option(
        "--all", "-a", help="Include deleted projects"
    )] = False,
):
    """List projects, open first."""
    tr = _get_tracker()
    _emit(_run(lambda: tr.list_projects(include_deleted=all_)))


# -----------------------------------------------------------------------------
# Issues
# -----------------------------------------------------------------------------

@issue_app.command("add")
def issue_add(
    title: Annotated[str, typer.Argument(help="Issue title")],
    description: Annotated[str, typer.Option(
        "--description", "-d", help="Longer description"
    )] = "",
    project: Annotated[Optional[str], typer.Option(
        "--project", "-p", help="File under this project (shortcode or id)"
    )] = None,
):
    """
    Create an issue.

    \b
    Examples:
        tally issue add "Crash on startup"
        tally issue add "Slow sync" -p '#K4M2QX' -d "Takes 30s on large repos"
    """
    tr = _get_tracker()
    parent = _resolve(tr, Project, project) if project else None
    issue = _run(lambda: tr.create_issue(title, description, project=parent))
    _emit([issue])


@issue_app.command("list")
def issue_list(
    project: Annotated[Optional[str], typer.Option(
        "--project", "-p", help="Only issues under this project"
    )] = None,
    open_only: Annotated[bool, typer.Option(
        "--open", "-o", help="Hide closed issues"
    )] = False,
    all_: Annotated[bool, typer.Option(
        "--all", "-a", help="Include deleted issues"
    )] = False,
):
    """List issues: open first, most recently updated first."""
    tr = _get_tracker()
    project_id = _resolve(tr, Project, project).id if project else None
    _emit(_run(lambda: tr.list_issues(
        project_id=project_id, include_closed=not open_only, include_deleted=all_,
    )))


@issue_app.command("show")
def issue_show(
    ref: Annotated[str, typer.Argument(help="Issue shortcode or id")],
):
    """Show an issue with its comments."""
    tr = _get_tracker()
    issue = _resolve(tr, Issue, ref)
    comments = _run(lambda: tr.list_comments(issue.id))
    if _get_json_output():
        data = issue.to_dict()
        data["comments"] = [c.to_dict() for c in comments]
        typer.echo(json.dumps(data, indent=2))
    else:
        typer.echo(_format_detail(issue, comments))


def _change_issues(refs: list[str], change, include_deleted: bool = False) -> None:
    tr = _get_tracker()
    changed = []
    for ref in refs:
        issue = _resolve(tr, Issue, ref, include_deleted)
        changed.append(_run(lambda: change(tr, issue)))
    _emit(changed)


@issue_app.command("close")
def issue_close(
    refs: Annotated[list[str], typer.Argument(help="Issue shortcode(s) or id(s)")],
):
    """Close issue(s)."""
    _change_issues(refs, lambda tr, issue: tr.close_record(issue))


@issue_app.command("reopen")
def issue_reopen(
    refs: Annotated[list[str], typer.Argument(help="Issue shortcode(s) or id(s)")],
):
    """Reopen closed issue(s)."""
    _change_issues(refs, lambda tr, issue: tr.reopen(issue))


@issue_app.command("delete")
def issue_delete(
    refs: Annotated[list[str], typer.Argument(help="Issue shortcode(s) or id(s)")],
):
    """
    Delete issue(s).

    Deletion is a tombstone that travels with sync and wins over any edit.
    `tally issue restore` undoes it locally only: the next sync with a
    replica that holds the tombstone deletes the issue again.
    """
    _change_issues(refs, lambda tr, issue: tr.delete(issue))


@issue_app.command("restore")
def issue_restore(
    refs: Annotated[list[str], typer.Argument(help="Issue shortcode(s) or id(s)")],
):
    """Restore deleted issue(s)."""
    _change_issues(refs, lambda tr, issue: tr.restore(issue), include_deleted=True)


@app.command("list")
def list_cmd():
    """List open issues (shortcut for `tally issue list --open`)."""
    issue_list(project=None, open_only=True, all_=False)


# -----------------------------------------------------------------------------
# Comments
# -----------------------------------------------------------------------------

@comment_app.command("add")
def comment_add(
    parent: Annotated[str, typer.Argument(help="Issue or project shortcode or id")],
    content: Annotated[str, typer.Argument(help="Comment text")],
):
    """Comment on an issue or project."""
    tr = _get_tracker()
    target = _resolve_parent(tr, parent)
    comment = _run(lambda: tr.create_comment(target, content))
    _emit([comment])


@comment_app.command("list")
def comment_list(
    parent: Annotated[str, typer.Argument(help="Issue or project shortcode or id")],
):
    """List comments on an issue or project, oldest first."""
    tr = _get_tracker()
    target = _resolve_parent(tr, parent)
    _emit(_run(lambda: tr.list_comments(target.id)))


# -----------------------------------------------------------------------------
# Sync
# -----------------------------------------------------------------------------

RemoteArgument = Annotated[
    Optional[str],
    typer.Argument(help="Remote name (default: configured remote, usually origin)"),
]


@app.command()
def push(remote: RemoteArgument = None):
    """Push all tally notes to a remote."""
    tr = _get_tracker()
    _run(lambda: tr.push(remote))
    typer.echo(f"Pushed to {remote or tr.config.remote}")


@app.command()
def pull(remote: RemoteArgument = None):
    """
    Fetch the remote's issues into the local issues ref.

    Fails if the two have diverged; use `tally sync` to merge instead.
    """
    tr = _get_tracker()
    _run(lambda: tr.pull(remote))
    typer.echo(f"Pulled from {remote or tr.config.remote}")


def _emit_stats(results: dict) -> None:
    if _get_json_output():
        typer.echo(json.dumps({k: v.to_dict() for k, v in results.items()}, indent=2))
        return
    if not results:
        typer.echo("Nothing to merge.")
    for category, stats in results.items():
        typer.echo(
            f"{category}: {len(stats.added)} added, {len(stats.replaced)} updated, "
            f"{len(stats.tombstoned)} deleted, {len(stats.skipped)} skipped"
        )


@app.command()
def sync(
    remote: RemoteArgument = None,
    no_push: Annotated[bool, typer.Option(
        "--no-push", help="Merge only; do not push the result"
    )] = False,
):
    """Fetch, merge and push every category."""
    tr = _get_tracker()
    _emit_stats(_run(lambda: tr.sync(remote, push=not no_push)))


@app.command()
def merge(
    remote_ref: Annotated[str, typer.Argument(
        help="Notes ref holding the other replica, e.g. refs/notes/tally-remotes/origin/issues"
    )],
    category: Annotated[str, typer.Argument(
        help=f"Category to merge into: {', '.join(RECORD_KINDS)}"
    )] = "issues",
):
    """Merge a fetched notes ref into a local category."""
    if category not in RECORD_KINDS:
        _fail(f"Unknown category {category!r}. Use one of: {', '.join(RECORD_KINDS)}")
    tr = _get_tracker()
    _emit_stats({category: _run(lambda: tr.merge(category, remote_ref))})


@app.command()
def reset(
    remote: Annotated[Optional[str], typer.Option(
        "--remote", help="Also delete the notes refs on this remote"
    )] = None,
    keep_local: Annotated[bool, typer.Option(
        "--keep-local", help="Leave the local refs alone (needs --remote)"
    )] = False,
    yes: Annotated[bool, typer.Option(
        "--yes", "-y", help="Do not ask for confirmation"
    )] = False,
):
    """
    Delete tally's notes refs.

    Removes every project, issue and comment ref (local, remote or both).
    Records still held by another clone come back on its next sync.
    """
    if keep_local and not remote:
        _fail("--keep-local needs --remote")
    where = " and ".join(w for w in (
        None if keep_local else "locally",
        f"on {remote}" if remote else None,
    ) if w)
    if not yes and not typer.confirm(f"Delete all tally notes refs {where}?"):
        raise typer.Exit(0)
    tr = _get_tracker()
    deleted = _run(lambda: tr.delete_refs(remote, local=not keep_local))
    if _get_json_output():
        typer.echo(json.dumps(deleted, indent=2))
    elif not deleted:
        typer.echo("No refs to delete.")
    else:
        for ref in deleted:
            typer.echo(f"deleted {ref}")


@app.command("close-from-commits")
def close_from_commits():
    """Close issues mentioned as `closes #CODE` in commit messages."""
    tr = _get_tracker()
    closed = _run(tr.close_issues_from_commits)
    if _get_json_output() or closed:
        _emit(closed)
    else:
        typer.echo("No issues closed.")


@app.command()
def config(
    remote: Annotated[Optional[str], typer.Option(
        "--remote", help="Set the default remote"
    )] = None,
    anchor: Annotated[Optional[str], typer.Option(
        "--anchor", help="Pin the anchor commit (needed with several root commits)"
    )] = None,
    author: Annotated[Optional[str], typer.Option(
        "--author", help="Set the author identity"
    )] = None,
    compare_and_swap: Annotated[Optional[bool], typer.Option(
        "--cas/--no-cas", help="Refuse or allow overwriting concurrent writes"
    )] = None,
):
    """Show or change configuration (.tally.toml at the repository root)."""
    try:
        cfg = load_config(_repo_override)
    except ValueError as e:
        _fail(str(e))

    changed = False
    for name, value in (("remote", remote), ("anchor", anchor), ("author", author),
                        ("compare_and_swap", compare_and_swap)):
        if value is not None:
            setattr(cfg, name, value)
            changed = True
    if changed:
        save_config(cfg)

    data = {
        "file": str(cfg.config_path),
        "remote": cfg.remote,
        "anchor": cfg.anchor,
        "author": cfg.author,
        "compare_and_swap": cfg.compare_and_swap,
        "backend": cfg.backend,
    }
    if _get_json_output():
        typer.echo(json.dumps(data, indent=2))
    else:
        for key, value in data.items():
            typer.echo(f"{key}: {'' if value is None else value}")


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="tally CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
