"""GitHub check-run aggregation for pre-deployment CI verification."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

import httpx

from constants import CHECK_STATUS_COMPLETED
from core.logging import get_logger, log_api_call
from services.deployment.exceptions import CheckQueryError

logger = get_logger(__name__)


class CheckClassification(str, Enum):
    PENDING = "pending"
    FAILED = "failed"
    PASSED = "passed"


@dataclass(frozen=True)
class CheckResult:
    """One classified check run."""
    repository: str
    name: str
    url: Optional[str]
    classification: CheckClassification

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repository": self.repository,
            "name": self.name,
            "url": self.url,
            "classification": self.classification.value,
        }


@dataclass
class CheckRound:
    """All check runs seen in one poll, partitioned by classification."""
    pending: List[CheckResult] = field(default_factory=list)
    failed: List[CheckResult] = field(default_factory=list)
    passed: List[CheckResult] = field(default_factory=list)

    def add(self, check: CheckResult) -> None:
        getattr(self, check.classification.value).append(check)


def repository_from_url(url: Optional[str], fallback: str) -> str:
    """Repository name from a check-run API URL (``.../repos/{owner}/{repo}/check-runs/{id}``)."""
    if url:
        parts = url.split("/")
        if "repos" in parts:
            index = parts.index("repos")
            if len(parts) > index + 2:
                return parts[index + 2]
    return fallback.split("/")[-1]


def classify(run: Dict[str, Any], passing_conclusions: Iterable[str]) -> CheckClassification:
    """Anything not completed yet (queued, in_progress, waiting, ...) is pending."""
    if run.get("status") != CHECK_STATUS_COMPLETED:
        return CheckClassification.PENDING
    if run.get("conclusion") in passing_conclusions:
        return CheckClassification.PASSED
    return CheckClassification.FAILED


class CheckAggregator:
    """Polls check runs on the main line of a set of repositories.

    ``rounds()`` yields one ``CheckRound`` per poll. It keeps polling every
    ``poll_interval`` seconds while checks are pending and stops after a
    round with failures or a fully passing round. Consumers stop early by
    closing the generator.
    """

    def __init__(
        self,
        repos: Sequence[str],
        token: Optional[str] = None,
        api_url: str = "https://api.github.com",
        ref: str = "main",
        poll_interval: float = 120.0,
        ignored_names: Iterable[str] = ("Dependabot",),
        passing_conclusions: Iterable[str] = ("success", "neutral", "skipped"),
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.repos = list(repos)
        self.ref = ref
        self.poll_interval = poll_interval
        self.ignored_names = frozenset(ignored_names)
        self.passing_conclusions = frozenset(passing_conclusions)
        self._owns_client = client is None
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if client is None:
            client = httpx.AsyncClient(base_url=api_url, timeout=timeout)
        client.headers.update(headers)
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "CheckAggregator":
        return cls(
            repos=settings.check_repos,
            token=settings.github_token,
            api_url=settings.github_api_url,
            ref=settings.check_ref,
            poll_interval=settings.check_poll_interval,
            ignored_names=settings.check_ignored_names,
            passing_conclusions=settings.check_passing_conclusions,
            timeout=settings.github_timeout,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _fetch_runs(self, repo: str) -> List[Dict[str, Any]]:
        owner, name = repo.split("/")
        path = f"/repos/{owner}/{name}/commits/{self.ref}/check-runs"
        try:
            response = await self._client.get(path)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            log_api_call(logger, "github", "check-runs", False, repo=repo, status=e.response.status_code)
            raise CheckQueryError(repo, f"GitHub returned HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            log_api_call(logger, "github", "check-runs", False, repo=repo, error=str(e))
            raise CheckQueryError(repo, f"Could not query check runs: {e}") from e

        runs = data.get("check_runs") or []
        log_api_call(logger, "github", "check-runs", True, repo=repo, runs=len(runs))
        return runs

    async def fetch_round(self) -> CheckRound:
        """Query every repository once and classify the runs."""
        results = await asyncio.gather(*(self._fetch_runs(repo) for repo in self.repos))

        check_round = CheckRound()
        for repo, runs in zip(self.repos, results):
            for run in runs:
                if not run or run.get("name") in self.ignored_names:
                    continue
                check_round.add(CheckResult(
                    repository=repository_from_url(run.get("url"), repo),
                    name=run.get("name", ""),
                    url=run.get("html_url"),
                    classification=classify(run, self.passing_conclusions),
                ))

        logger.debug(
            "Check round collected",
            pending=len(check_round.pending),
            failed=len(check_round.failed),
            passed=len(check_round.passed),
        )
        return check_round

    async def rounds(self) -> AsyncIterator[CheckRound]:
        while True:
            check_round = await self.fetch_round()
            yield check_round

            if check_round.failed or not check_round.pending:
                return

            logger.info("Checks pending, polling again", delay=self.poll_interval,
                        pending=[c.name for c in check_round.pending])
            await asyncio.sleep(self.poll_interval)
