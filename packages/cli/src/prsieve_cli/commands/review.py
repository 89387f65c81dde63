"""review command: run the batched AI review on a pull request."""

from __future__ import annotations

import click
from rich.console import Console

from prsieve_core.exceptions import PrsieveError
from prsieve_core.gh.pull_request import get_pull_requests, get_repo
from prsieve_core.reviewer import run_review

console = Console()


@click.command("review")
@click.option("--repo", required=True, help="GitHub repository in owner/name format.")
@click.option(
    "--pr",
    "pr_number",
    type=int,
    default=None,
    help="Pull request number. Omit to list open PRs interactively.",
)
@click.option(
    "--model",
    type=click.Choice(["anthropic", "openai"]),
    default=None,
    help="AI model provider. Overrides config file.",
)
@click.option(
    "--guidelines",
    "guidelines_path",
    default=None,
    help="Path to a Markdown guidelines file. Overrides config file.",
)
@click.option(
    "--config",
    "config_path",
    default=None,
    help="Path to the configuration file. Overrides the group-level --config.",
)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompts.")
@click.option(
    "--shadow",
    "-s",
    is_flag=True,
    help="Dry-run mode: print review comments without posting to GitHub.",
)
@click.option(
    "--sequential",
    is_flag=True,
    help="Process batches one at a time instead of in parallel.",
)
@click.pass_context
def review_cmd(
    ctx,
    repo: str,
    pr_number: int | None,
    model: str | None,
    guidelines_path: str | None,
    config_path: str | None,
    yes: bool,
    shadow: bool,
    sequential: bool,
):
    """Review a GitHub pull request.

    Changed files are grouped into token-bounded batches, analysed by Claude or
    GPT-4o, pinned to exact diff lines and filtered for duplicates before
    anything is posted.

    \b
    Required environment variables:
      GITHUB_TOKEN         GitHub personal access token (or use gh CLI)
      ANTHROPIC_API_KEY    Required when using --model anthropic
      OPENAI_API_KEY       Required when using --model openai
    """
    from prsieve_core.config import load_config
    from prsieve_cli.auth import resolve_github_token

    path = config_path or (ctx.obj or {}).get("config_path", ".prsieve.yml")
    config = load_config(path, cli_overrides={"model": model, "guidelines": guidelines_path})
    if sequential:
        config["batch_processing"]["parallel"]["enabled"] = False

    token = resolve_github_token()
    if not token:
        raise click.UsageError(
            "No GitHub token found. Set GITHUB_TOKEN or run `gh auth login` first.\n"
            "Create a token at https://github.com/settings/tokens"
        )
    config["github_token"] = token

    providers = {config["model"]}
    multi_cfg = config.get("multi_instance") or {}
    if multi_cfg.get("enabled"):
        providers.update(spec.get("model") for spec in multi_cfg.get("instances") or [])
    if "anthropic" in providers and not config.get("anthropic_api_key"):
        raise click.UsageError("ANTHROPIC_API_KEY environment variable is not set.")
    if "openai" in providers and not config.get("openai_api_key"):
        raise click.UsageError("OPENAI_API_KEY environment variable is not set.")

    this_repo = get_repo(repo, token=token)

    if pr_number is None:
        prs = list(get_pull_requests(this_repo))
        if not prs:
            console.print("[yellow]No open pull requests found.[/yellow]")
            return
        console.print("\nOpen pull requests:")
        for pr in prs:
            console.print(f"  [bold]#{pr.number}[/bold]  {pr.title}")
        pr_number = click.prompt("\nEnter the pull request number", type=int)

    try:
        run_review(
            repo=repo,
            pr_number=pr_number,
            config=config,
            auto_confirm=yes,
            shadow=shadow,
            repo_obj=this_repo,
        )
    except (PrsieveError, ValueError) as e:
        raise click.ClickException(str(e))
