"""
Azure DevOps Advanced Security (CodeQL) Enabler
Turns on Advanced Security with CodeQL code scanning for Git repositories and writes a CSV audit report.

Key Features:
- Lists repositories for a whole organization or a single project
- Wildcard filtering of repositories by name
- One bulk enablement request per project
- Dry-run preview and per-project confirmation before anything is changed
- Project failures are isolated: the run continues and the report records them
- Timestamped CSV report of every repository processed
"""

import argparse
import asyncio
import base64
import csv
import fnmatch
import json
import logging
import os
import sys
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import aiohttp

DEFAULT_BASE_URL = "https://dev.azure.com"
DEFAULT_ADVSEC_URL = "https://advsec.dev.azure.com"
GIT_API_VERSION = "7.1"
ADVSEC_API_VERSION = "7.2-preview.1"

REPORT_PREFIX = "codeql-enable-report"
LOG_PREFIX = "codeql-enable"
FILE_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
ENTRY_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
REPORT_FIELDNAMES = ["Timestamp", "Project", "Repository", "RepoId", "Action", "Result"]

# Number of repository names listed in the action summary before "+K more"
PREVIEW_LIMIT = 5

PENDING = "Pending"
SUCCESS = "Success"

logger = logging.getLogger(__name__)


class Action(Enum):
    """Action labels written to the report"""

    ENABLEMENT = "Enablement"
    ENABLED = "Enabled"


class AzureDevOpsError(Exception):
    """Raised when an Azure DevOps API call fails"""

    def __init__(self, message: str, status: int = 0, url: str = "", context: str = ""):
        super().__init__(message)
        self.message = message
        self.status = status
        self.url = url
        self.context = context


@dataclass(frozen=True)
class Repository:
    """A Git repository as returned by the repositories API"""

    id: str
    name: str
    project_name: str | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Repository":
        """Build a repository from an API record; the nested project is optional"""
        project = data.get("project") or {}
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name", ""),
            project_name=project.get("name") or None,
        )


@dataclass(frozen=True)
class EnablementRequest:
    """Enablement settings for a single repository"""

    repository_id: str
    advsec_enabled: bool = True
    code_scanning_enabled: bool = True
    codeql_enabled: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON shape expected by the enablement API"""
        return {
            "repositoryId": self.repository_id,
            "advSecEnabled": self.advsec_enabled,
            "codeScanningEnabled": self.code_scanning_enabled,
            "codeQLEnabled": self.codeql_enabled,
        }


@dataclass(frozen=True)
class ReportEntry:
    """Outcome of the enablement for a single repository"""

    timestamp: str
    project: str
    repository: str
    repo_id: str
    action: str = Action.ENABLEMENT.value
    result: str = PENDING

    @property
    def is_pending(self) -> bool:
        return self.result == PENDING

    def to_row(self) -> dict[str, str]:
        """Convert to dictionary for CSV writing"""
        return {
            "Timestamp": self.timestamp,
            "Project": self.project,
            "Repository": self.repository,
            "RepoId": self.repo_id,
            "Action": self.action,
            "Result": self.result,
        }


@dataclass
class RunStats:
    """Counters reported at the end of a run"""

    repositories_found: int = 0
    repositories_matched: int = 0
    repositories_skipped: int = 0
    projects_enabled: int = 0
    projects_failed: int = 0
    projects_skipped: int = 0


@dataclass
class EnablerConfig:
    """Settings for one enablement run"""

    organization: str
    pat_token: str
    project: str | None = None
    agent_pool: str | None = None
    repo_filter: str | None = None
    dry_run: bool = False
    confirm: bool = False
    output_dir: Path = Path(".")
    timeout: float = 30.0
    base_url: str = DEFAULT_BASE_URL
    advsec_url: str = DEFAULT_ADVSEC_URL
    verbose: bool = False


class AzureDevOpsClient:
    """Minimal Azure DevOps REST client for listing repositories and enabling Advanced Security"""

    def __init__(
        self,
        organization: str,
        pat_token: str,
        base_url: str = DEFAULT_BASE_URL,
        advsec_url: str = DEFAULT_ADVSEC_URL,
        timeout: float = 30.0,
    ):
        """
        Initialize the client

        Args:
            organization: Azure DevOps organization name
            pat_token: Personal Access Token with Code (read) and Advanced Security (read & write) scopes
            base_url: Root of the core REST API
            advsec_url: Root of the Advanced Security REST API
            timeout: Total timeout per request in seconds

        """
        if not organization:
            raise ValueError("organization is required")

        self.organization = organization
        self.base_url = f"{base_url.rstrip('/')}/{organization}"
        self.advsec_url = f"{advsec_url.rstrip('/')}/{organization}"
        self.timeout = timeout

        # Encode PAT token for basic auth
        auth_string = f":{pat_token}"
        self.auth_header = base64.b64encode(auth_string.encode()).decode()

        self.stats = {
            "api_calls": 0,
            "api_errors": 0,
        }

        # Error tracking
        self.errors: list[dict[str, Any]] = []

    async def _make_request(
        self,
        session: aiohttp.ClientSession,
        url: str,
        method: str = "GET",
        base_url: str | None = None,
        json_body: Any = None,
        context: str = "",
    ) -> Any:
        """
        Make an authenticated API request

        Args:
            session: aiohttp session
            url: API endpoint (relative or absolute)
            method: HTTP method
            base_url: Override base URL if needed
            json_body: JSON payload to send
            context: Context string for logging

        Returns:
            Parsed JSON response, or None for an empty body

        Raises:
            AzureDevOpsError: on transport errors, non-2xx responses and undecodable bodies

        """
        if not url.startswith("http"):
            base = base_url or self.base_url
            url = f"{base}/{url}"

        headers = {
            "Authorization": f"Basic {self.auth_header}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

        self.stats["api_calls"] += 1
        logger.debug(f"{method} {url} ({context})")

        try:
            async with session.request(
                method, url, headers=headers, json=json_body, timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as response:
                # A rejected token yields 203 with an HTML sign-in page instead of 401
                if response.status == 203 or response.status in (401, 403):
                    logger.error(f"Authorization failed: {url} ({context}) - Status: {response.status}")
                    raise self._fail(
                        "auth_error", url, context, response.status, f"HTTP {response.status}: authorization failed"
                    )

                if not 200 <= response.status < 300:
                    error_text = await response.text()
                    error_type = "server_error" if response.status >= 500 else "client_error"
                    logger.warning(f"Request failed: {url} ({context}) - Status: {response.status} - {error_text}")
                    raise self._fail(
                        error_type, url, context, response.status, f"HTTP {response.status}: {error_text[:500]}"
                    )

                text = await response.text()
                if not text.strip():
                    return None

                try:
                    return json.loads(text)
                except json.JSONDecodeError as e:
                    logger.error(f"JSON decode error: {url} ({context}) - {e} - Response: {text[:200]}")
                    raise self._fail("json_error", url, context, response.status, f"Invalid JSON response: {e}")

        except TimeoutError:
            logger.error(f"Request timeout: {url} ({context})")
            raise self._fail("timeout", url, context, 0, "Request timeout") from None

        except aiohttp.ClientError as e:
            logger.error(f"Client error: {url} ({context}) - {e}")
            raise self._fail("client_exception", url, context, 0, f"{type(e).__name__}: {e}") from e

    def _fail(self, error_type: str, url: str, context: str, status: int, message: str) -> AzureDevOpsError:
        """Record an API error and build the exception to raise"""
        self.stats["api_errors"] += 1
        self._log_error(error_type, url, context, status, message)
        return AzureDevOpsError(message, status=status, url=url, context=context)

    def _log_error(self, error_type: str, url: str, context: str, status: int, message: str) -> None:
        """Log an error for later review"""
        self.errors.append(
            {
                "timestamp": datetime.now().isoformat(),
                "error_type": error_type,
                "url": url,
                "context": context,
                "status": status,
                "message": message,
            }
        )

    async def list_repositories(self, session: aiohttp.ClientSession, project: str | None = None) -> list[Repository]:
        """
        Get all Git repositories in the organization, or in one project

        Args:
            session: aiohttp session
            project: Restrict the listing to this project

        Returns:
            List of repositories

        """
        scope = f"{self.organization}/{project}" if project else self.organization
        logger.info(f"Fetching repositories for {scope}...")

        url = f"_apis/git/repositories?api-version={GIT_API_VERSION}"
        if project:
            url = f"{project}/{url}"

        context = f"list_repositories:{scope}"
        response = await self._make_request(session, url, context=context)

        if not isinstance(response, dict) or "value" not in response:
            raise self._fail("invalid_response", url, context, 200, "Repository listing returned no 'value' array")

        repositories = [Repository.from_api(item) for item in response["value"]]

        logger.info(f"Found {len(repositories)} repositories")
        return repositories

    async def enable_advanced_security(
        self, session: aiohttp.ClientSession, project: str, payload: list[EnablementRequest]
    ) -> None:
        """
        Enable Advanced Security for a batch of repositories in one project

        Args:
            session: aiohttp session
            project: Project that owns every repository in the payload
            payload: One enablement request per repository

        """
        url = f"{project}/_apis/management/repositories/enablement?api-version={ADVSEC_API_VERSION}"
        body = [request.to_dict() for request in payload]

        await self._make_request(
            session, url, method="PATCH", base_url=self.advsec_url, json_body=body, context=f"enable:{project}"
        )


def filter_repositories(repositories: Iterable[Repository], pattern: str | None) -> list[Repository]:
    """Keep repositories whose name matches the wildcard pattern; no pattern keeps everything"""
    if not pattern:
        return list(repositories)
    return [repo for repo in repositories if fnmatch.fnmatch(repo.name, pattern)]


def resolve_project(repository: Repository, fallback_project: str | None = None) -> str | None:
    """The repository's own project wins over the fallback"""
    if repository.project_name:
        return repository.project_name
    if fallback_project:
        return fallback_project
    return None


def group_by_project(
    repositories: Iterable[Repository], fallback_project: str | None = None
) -> dict[str, list[Repository]]:
    """
    Partition repositories by owning project

    Repositories without a resolvable project are skipped with a warning.

    Args:
        repositories: Repositories to group, in encounter order
        fallback_project: Project used when a repository carries none

    Returns:
        Mapping of project name to its repositories

    """
    buckets: dict[str, list[Repository]] = {}

    for repo in repositories:
        project = resolve_project(repo, fallback_project)
        if project is None:
            logger.warning(f"Skipping repository {repo.name} ({repo.id}): project could not be determined")
            continue
        buckets.setdefault(project, []).append(repo)

    return buckets


def build_enablement_payload(repositories: Iterable[Repository]) -> list[EnablementRequest]:
    return [EnablementRequest(repository_id=repo.id) for repo in repositories]


def create_pending_entries(project: str, repositories: Iterable[Repository], timestamp: datetime) -> list[ReportEntry]:
    stamp = timestamp.strftime(ENTRY_TIMESTAMP_FORMAT)
    return [ReportEntry(timestamp=stamp, project=project, repository=repo.name, repo_id=repo.id) for repo in repositories]


def finalize_project(entries: Iterable[ReportEntry], project: str, error: str | None = None) -> list[ReportEntry]:
    """
    Return a new entry list with the batch outcome applied to one project

    Only pending entries of the given project change. Without an error they become
    Enabled/Success, otherwise they keep the Enablement action and record the failure.
    """
    if error is None:
        action, result = Action.ENABLED.value, SUCCESS
    else:
        action, result = Action.ENABLEMENT.value, f"Failed: {error}"

    return [
        replace(entry, action=action, result=result) if entry.project == project and entry.is_pending else entry
        for entry in entries
    ]


def summarize_action(project: str, repositories: list[Repository], limit: int = PREVIEW_LIMIT) -> str:
    """Human-readable description of the enablement about to run for a project"""
    listed = ", ".join(repo.name for repo in repositories[:limit])
    if len(repositories) > limit:
        listed += f" (+{len(repositories) - limit} more)"
    return f"Enable Advanced Security (CodeQL) on {len(repositories)} repositories in project '{project}': {listed}"


def prompt_confirmation(summary: str) -> bool:
    """Ask the operator to approve an action on the console"""
    try:
        answer = input(f"{summary}\nProceed? [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


async def dispatch_enablement(
    client: AzureDevOpsClient,
    session: aiohttp.ClientSession | None,
    buckets: dict[str, list[Repository]],
    report: list[ReportEntry] | None = None,
    *,
    dry_run: bool = False,
    confirm: bool = False,
    prompt: Callable[[str], bool] = prompt_confirmation,
    stats: RunStats | None = None,
    clock: Callable[[], datetime] = datetime.now,
) -> list[ReportEntry]:
    """
    Enable Advanced Security one project at a time

    Args:
        client: Client used for the enablement calls
        session: aiohttp session handed to the client
        buckets: Repositories grouped by project
        report: Accumulator updated in place; it holds everything recorded so far if the run is interrupted
        dry_run: Only preview the calls
        confirm: Ask before each project's call
        prompt: Confirmation callback, returns True to proceed
        stats: Counters to update
        clock: Source of entry timestamps

    Returns:
        The report with one entry per repository in the buckets appended

    """
    entries = report if report is not None else []
    stats = stats if stats is not None else RunStats()

    for project, repositories in buckets.items():
        logger.info(f"Processing project '{project}' ({len(repositories)} repositories)")

        payload = build_enablement_payload(repositories)
        entries.extend(create_pending_entries(project, repositories, clock()))
        for repo in repositories:
            logger.info(f"  Prepared {repo.name} ({repo.id})")

        summary = summarize_action(project, repositories)

        if dry_run:
            logger.info(f"What if: {summary}")
            stats.projects_skipped += 1
            continue

        if confirm and not prompt(summary):
            logger.info(f"Skipped project '{project}': not confirmed")
            stats.projects_skipped += 1
            continue

        try:
            await client.enable_advanced_security(session, project, payload)
        except AzureDevOpsError as e:
            logger.error(f"Failed to enable Advanced Security for project '{project}': {e}")
            entries[:] = finalize_project(entries, project, error=str(e))
            stats.projects_failed += 1
            continue

        logger.info(f"Enabled Advanced Security for {len(payload)} repositories in project '{project}'")
        entries[:] = finalize_project(entries, project)
        stats.projects_enabled += 1

    return entries


def write_report(entries: Iterable[ReportEntry], output_dir: Path, started_at: datetime) -> Path:
    """
    Write the report to a timestamped CSV file

    Args:
        entries: Report entries in creation order
        output_dir: Directory for the report file
        started_at: Run start time used in the file name

    Returns:
        Path of the written file

    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    report_file = output_dir / f"{REPORT_PREFIX}-{started_at.strftime(FILE_TIMESTAMP_FORMAT)}.csv"

    count = 0
    with open(report_file, "w", newline="", encoding="utf-8") as csv_file:
        writer = csv.DictWriter(csv_file, fieldnames=REPORT_FIELDNAMES)
        writer.writeheader()
        for entry in entries:
            writer.writerow(entry.to_row())
            count += 1

    logger.info(f"Report written to {report_file} ({count} entries)")
    return report_file


def save_error_log(errors: list[dict[str, Any]], output_dir: Path, started_at: datetime) -> Path | None:
    """Save API errors to a JSON file next to the report"""
    if not errors:
        return None

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    error_file = output_dir / f"{LOG_PREFIX}-errors-{started_at.strftime(FILE_TIMESTAMP_FORMAT)}.json"
    with open(error_file, "w", encoding="utf-8") as f:
        json.dump(errors, f, indent=2)

    logger.warning(f"Detailed errors saved to: {error_file}")
    return error_file


async def run_enablement(
    config: EnablerConfig,
    prompt: Callable[[str], bool] = prompt_confirmation,
    started_at: datetime | None = None,
) -> int:
    """
    Run the complete enablement process

    Args:
        config: Run settings
        prompt: Confirmation callback used in confirm mode
        started_at: Run start time shared by every output file name

    Returns:
        Process exit code

    """
    start_time = started_at or datetime.now()
    logger.info(f"Starting Advanced Security enablement at {start_time}")
    logger.info(f"Organization: {config.organization}")
    if config.project:
        logger.info(f"Project: {config.project}")
    if config.agent_pool:
        logger.info(f"Agent pool: {config.agent_pool}")
    if config.dry_run:
        logger.info("DRY-RUN MODE - no changes will be made")

    client = AzureDevOpsClient(
        organization=config.organization,
        pat_token=config.pat_token,
        base_url=config.base_url,
        advsec_url=config.advsec_url,
        timeout=config.timeout,
    )
    stats = RunStats()

    async with aiohttp.ClientSession() as session:
        try:
            repositories = await client.list_repositories(session, config.project)
        except AzureDevOpsError as e:
            logger.error(f"Failed to list repositories: {e}")
            save_error_log(client.errors, config.output_dir, start_time)
            return 1

        stats.repositories_found = len(repositories)

        matched = filter_repositories(repositories, config.repo_filter)
        stats.repositories_matched = len(matched)
        if config.repo_filter:
            logger.info(f"Filter '{config.repo_filter}' matched {len(matched)} of {len(repositories)} repositories")

        if not matched:
            logger.warning("No repositories to process. Exiting.")
            return 0

        buckets = group_by_project(matched, config.project)
        stats.repositories_skipped = len(matched) - sum(len(repos) for repos in buckets.values())

        report: list[ReportEntry] = []
        try:
            await dispatch_enablement(
                client,
                session,
                buckets,
                report,
                dry_run=config.dry_run,
                confirm=config.confirm,
                prompt=prompt,
                stats=stats,
            )
        except (KeyboardInterrupt, asyncio.CancelledError):
            # Projects not reached yet stay Pending
            logger.warning("Enablement interrupted. Writing the report for the projects processed so far")
            write_report(report, config.output_dir, start_time)
            save_error_log(client.errors, config.output_dir, start_time)
            raise

    report_file = write_report(report, config.output_dir, start_time)
    _log_final_stats(stats, client, start_time, datetime.now(), report_file)
    save_error_log(client.errors, config.output_dir, start_time)

    return 1 if stats.projects_failed else 0


def _log_final_stats(
    stats: RunStats, client: AzureDevOpsClient, start_time: datetime, end_time: datetime, report_file: Path
) -> None:
    logger.info("=" * 80)
    logger.info("ENABLEMENT COMPLETED")
    logger.info("=" * 80)
    logger.info(f"Total duration: {end_time - start_time}")
    logger.info(f"Report file: {report_file}")
    logger.info("")
    logger.info("FINAL STATISTICS:")
    logger.info(f"  Repositories found: {stats.repositories_found}")
    logger.info(f"  Repositories matched: {stats.repositories_matched}")
    logger.info(f"  Repositories skipped (no project): {stats.repositories_skipped}")
    logger.info(f"  Projects enabled: {stats.projects_enabled}")
    logger.info(f"  Projects failed: {stats.projects_failed}")
    logger.info(f"  Projects skipped: {stats.projects_skipped}")
    logger.info(f"  Total API calls: {client.stats['api_calls']}")
    logger.info(f"  API errors encountered: {client.stats['api_errors']}")

    if stats.projects_failed:
        logger.warning(f"{stats.projects_failed} project(s) failed. Check the report for details.")

    logger.info("=" * 80)


def setup_logging(output_dir: Path, started_at: datetime, verbose: bool = False) -> Path:
    """Log to stdout and to a timestamped file in the output directory"""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    log_file = output_dir / f"{LOG_PREFIX}-{started_at.strftime(FILE_TIMESTAMP_FORMAT)}.log"

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding="utf-8"),
            logging.StreamHandler(sys.stdout),
        ],
    )
    return log_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ado-codeql-enable",
        description="Enable Advanced Security (CodeQL) on Azure DevOps repositories and write a CSV report.",
    )
    parser.add_argument(
        "--organization",
        default=os.getenv("ADO_ORGANIZATION"),
        help="Azure DevOps organization name (default: ADO_ORGANIZATION env)",
    )
    parser.add_argument(
        "--token",
        default=os.getenv("ADO_PAT_TOKEN"),
        help="Personal Access Token (default: ADO_PAT_TOKEN env)",
    )
    parser.add_argument("--project", default=None, help="Only process repositories of this project")
    parser.add_argument("--agent-pool", default=None, help="Agent pool for the CodeQL pipelines (logged only)")
    parser.add_argument("--repo-filter", default=None, help="Wildcard pattern on repository names (e.g. '*Test*')")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be done without making changes")
    parser.add_argument("--confirm", action="store_true", help="Ask for confirmation before each project")
    parser.add_argument("--output-dir", type=Path, default=Path("."), help="Directory for report and log files")
    parser.add_argument("--timeout", type=float, default=30.0, help="Timeout per API request in seconds")
    parser.add_argument("--base-url", default=DEFAULT_BASE_URL, help="Azure DevOps REST API root")
    parser.add_argument("--advsec-url", default=DEFAULT_ADVSEC_URL, help="Advanced Security REST API root")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    if not args.organization:
        logger.error("Organization not configured. Use --organization or set ADO_ORGANIZATION.")
        return 1

    if not args.token:
        logger.error("PAT token not provided. Use --token or set ADO_PAT_TOKEN.")
        return 1

    config = EnablerConfig(
        organization=args.organization,
        pat_token=args.token,
        project=args.project,
        agent_pool=args.agent_pool,
        repo_filter=args.repo_filter,
        dry_run=args.dry_run,
        confirm=args.confirm,
        output_dir=args.output_dir,
        timeout=args.timeout,
        base_url=args.base_url,
        advsec_url=args.advsec_url,
        verbose=args.verbose,
    )

    started_at = datetime.now()
    setup_logging(config.output_dir, started_at, verbose=config.verbose)

    try:
        return asyncio.run(run_enablement(config, started_at=started_at))
    except KeyboardInterrupt:
        logger.warning("Enablement interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
