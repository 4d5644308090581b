# npm_inspector/registry_client.py
import logging
import re
import time
from urllib.parse import quote

import requests
from semantic_version import NpmSpec, Version

from .cache import GITHUB_STATS_TTL
from .errors import ErrorKind, InspectorError
from .http_client import DEFAULT_TIMEOUT, request_json
from .models import GitHubStats, PackageMetadata, PackageVersions

logger = logging.getLogger(__name__)

NPM_REGISTRY_URL = "https://registry.npmjs.org"
GITHUB_API_URL = "https://api.github.com"
SERVICE_NAME = "npm Registry"

NPM_NAME_PATTERN = re.compile(r"^(@[a-z0-9-_.]+/)?[a-z0-9-_.]+$")
GITHUB_REPO_PATTERN = re.compile(r"github\.com[/:]([\w.-]+)/([\w.-]+)", re.IGNORECASE)


def validate_package_name(package_name) -> str:
    if not package_name or not isinstance(package_name, str):
        raise InspectorError(ErrorKind.VALIDATION_ERROR, "Package name must be a non-empty string")
    if len(package_name) > 214:
        raise InspectorError(ErrorKind.VALIDATION_ERROR, "Invalid package name. Package name must be between 1 and 214 characters.")
    if not NPM_NAME_PATTERN.match(package_name):
        raise InspectorError(
            ErrorKind.VALIDATION_ERROR,
            "Invalid package name. Use lowercase letters, numbers, hyphens, underscores, dots, and optionally a @scope/ prefix.",
        )
    return package_name


def package_url(package_name: str, version: str | None = None) -> str:
    # Scoped names travel as a single encoded path segment: @scope%2Fname
    encoded = quote(package_name, safe="@") if "/" in package_name else package_name
    url = f"{NPM_REGISTRY_URL}/{encoded}"
    if version:
        url += f"/{quote(version, safe='')}"
    return url


def max_satisfying(versions: list[str], range_expr: str) -> str | None:
    """
    Highest version in `versions` that satisfies the npm range `range_expr`.
    Unparseable ranges (dist-tags, URLs, git specs) and unparseable versions are
    ignored; returns None when nothing matches.
    """
    try:
        spec = NpmSpec((range_expr or "").strip() or "*")
    except ValueError as e:
        logger.debug(f"Unsupported version range '{range_expr}': {e}")
        return None

    best = None
    for raw in versions:
        try:
            parsed = Version(raw)
        except ValueError:
            continue
        if parsed in spec and (best is None or parsed > best[0]):
            best = (parsed, raw)
    return best[1] if best else None


def parse_github_repo(repository_url: str) -> tuple[str, str] | None:
    """
    Extracts (owner, repo) from a GitHub repository URL.
    Handles https, git+https, git@ and ssh forms plus .git suffixes, #fragments and ?queries.
    """
    if not repository_url or not isinstance(repository_url, str) or "github.com" not in repository_url:
        return None
    clean_url = re.sub(r"^git\+", "", repository_url)
    clean_url = re.sub(r"^(https?|ssh)://", "", clean_url)
    clean_url = re.sub(r"^git@", "", clean_url)
    clean_url = re.sub(r"[#?].*$", "", clean_url)
    clean_url = re.sub(r"\.git$", "", clean_url)
    match = GITHUB_REPO_PATTERN.search(clean_url)
    if not match:
        return None
    return match.group(1), match.group(2)


def _repository_url(*candidates) -> str:
    for candidate in candidates:
        if isinstance(candidate, str) and candidate:
            return candidate
        if isinstance(candidate, dict) and candidate.get("url"):
            return candidate["url"]
    return ""


def _validate_package_document(data, package_name: str):
    if not isinstance(data, dict) or not data.get("name"):
        raise InspectorError(ErrorKind.VALIDATION_ERROR, "Invalid npm API response: missing name field")
    dist_tags = data.get("dist-tags")
    latest = dist_tags.get("latest") if isinstance(dist_tags, dict) else None
    if not latest or not isinstance(latest, str):
        raise InspectorError(ErrorKind.VALIDATION_ERROR, "Invalid npm API response: missing or invalid dist-tags.latest field")
    versions = data.get("versions")
    if not isinstance(versions, dict):
        raise InspectorError(ErrorKind.VALIDATION_ERROR, "Invalid npm API response: missing or invalid versions field")
    version_data = versions.get(latest)
    if not isinstance(version_data, dict):
        raise InspectorError(ErrorKind.VALIDATION_ERROR, f"Invalid npm API response: version {latest} not found in versions object")
    if "dependencies" in version_data and version_data["dependencies"] is not None and not isinstance(version_data["dependencies"], dict):
        raise InspectorError(ErrorKind.VALIDATION_ERROR, "Invalid npm API response: dependencies must be an object")
    if data["name"].lower() != package_name.lower():
        raise InspectorError(
            ErrorKind.VALIDATION_ERROR,
            f"Invalid npm API response: package name mismatch (expected {package_name}, got {data['name']})",
        )


class RegistryClient:
    """Read-only client for the npm registry with validation, retry and optional caching."""

    def __init__(self, session=None, timeout: float = DEFAULT_TIMEOUT, cache=None, sleep=time.sleep):
        self.session = session or requests.Session()
        self.timeout = timeout
        self.cache = cache
        self._sleep = sleep

    def _get(self, url: str, context: str, service: str = SERVICE_NAME, headers: dict | None = None):
        return request_json(
            self.session, "GET", url,
            service=service, context=context, timeout=self.timeout, headers=headers, sleep=self._sleep,
        )

    def _cache_get(self, key: str):
        return self.cache.get(key) if self.cache is not None else None

    def _cache_set(self, key: str, value, ttl: float | None = None):
        if self.cache is not None:
            self.cache.set(key, value, ttl)

    # --- Package documents ---

    def fetch_package_data(self, package_name: str, include_github_stats: bool = True) -> PackageMetadata:
        """
        Fetches the latest published version of `package_name`.
        Raises InspectorError (VALIDATION_ERROR, PACKAGE_NOT_FOUND, RATE_LIMIT, ...) on failure.
        """
        validate_package_name(package_name)
        started = time.monotonic()

        cache_key = f"npm:{package_name}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            logger.info(f"Cache hit for package: {package_name}")
            metadata = PackageMetadata.from_dict(cached)
        else:
            logger.info(f"Fetching package: {package_name}")
            data = self._get(package_url(package_name), context=package_name)
            _validate_package_document(data, package_name)

            latest = data["dist-tags"]["latest"]
            version_data = data["versions"][latest]
            time_data = data.get("time") if isinstance(data.get("time"), dict) else {}
            dependencies = version_data.get("dependencies")
            metadata = PackageMetadata(
                name=data["name"],
                version=latest,
                description=version_data.get("description") or data.get("description") or "",
                dependencies=dict(dependencies) if isinstance(dependencies, dict) else {},
                license=_license_name(version_data.get("license") or data.get("license")),
                repository=_repository_url(version_data.get("repository"), data.get("repository")),
                maintainers=list(data.get("maintainers") or []),
                last_publish_date=time_data.get(latest) or time_data.get("modified"),
            )
            # core metadata only; maintenance signals live in their own namespace
            self._cache_set(cache_key, metadata.to_dict())

        if include_github_stats:
            metadata = metadata.with_github_stats(self.get_github_stats(metadata.repository))

        logger.info(f"Fetched {package_name}@{metadata.version} in {(time.monotonic() - started) * 1000:.0f} ms")
        return metadata

    def fetch_package_version_data(self, package_name: str, version: str) -> PackageMetadata:
        """Fetches the document of one exact published version."""
        validate_package_name(package_name)
        label = f"{package_name}@{version}"
        cache_key = f"npm:{label}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            logger.debug(f"Cache hit for package version: {label}")
            return PackageMetadata.from_dict(cached)

        logger.debug(f"Fetching package version: {label}")
        data = self._get(package_url(package_name, version), context=label)
        if not isinstance(data, dict) or not data.get("name") or not data.get("version"):
            raise InspectorError(ErrorKind.VALIDATION_ERROR, "Invalid npm API response: missing name or version field")
        dependencies = data.get("dependencies")
        metadata = PackageMetadata(
            name=data["name"],
            version=data["version"],
            description=data.get("description") or "",
            dependencies=dict(dependencies) if isinstance(dependencies, dict) else {},
            license=_license_name(data.get("license")),
            repository=_repository_url(data.get("repository")),
            maintainers=list(data.get("maintainers") or []),
        )
        self._cache_set(cache_key, metadata.to_dict())
        return metadata

    def fetch_package_versions(self, package_name: str) -> PackageVersions:
        validate_package_name(package_name)
        cache_key = f"npm:meta:{package_name}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            return PackageVersions(versions=list(cached["versions"]), latest=cached.get("latest"))

        data = self._get(package_url(package_name), context=package_name)
        if not isinstance(data, dict):
            raise InspectorError(ErrorKind.VALIDATION_ERROR, "Invalid npm API response: expected a JSON object")
        versions = data.get("versions") if isinstance(data.get("versions"), dict) else {}
        dist_tags = data.get("dist-tags") if isinstance(data.get("dist-tags"), dict) else {}
        result = PackageVersions(versions=list(versions.keys()), latest=dist_tags.get("latest"))
        self._cache_set(cache_key, {"versions": result.versions, "latest": result.latest})
        return result

    def resolve_version_from_range(self, package_name: str, range_expr: str) -> str:
        """
        Resolves an npm range to an exact published version.

        Prefers the `latest` dist-tag when it satisfies the range, otherwise the
        highest satisfying version. When nothing satisfies, falls back to
        `latest`. Raises VERSION_RESOLUTION_ERROR if no version can be chosen.
        """
        try:
            available = self.fetch_package_versions(package_name)
        except InspectorError as e:
            raise InspectorError(
                ErrorKind.VERSION_RESOLUTION_ERROR, f"Failed to resolve version for {package_name}: {e.message}", cause=e,
            )

        if available.latest and max_satisfying([available.latest], range_expr):
            resolved = available.latest
        else:
            resolved = max_satisfying(available.versions, range_expr)

        if resolved:
            logger.debug(f"Resolved {package_name}@{range_expr} to {resolved}")
            return resolved
        if available.latest:
            logger.warning(f"Could not resolve '{range_expr}' for {package_name}, using latest: {available.latest}")
            return available.latest
        raise InspectorError(ErrorKind.VERSION_RESOLUTION_ERROR, f"Could not resolve version for {package_name}@{range_expr}")

    # --- Maintenance signals ---

    def fetch_github_stats(self, owner: str, repo: str) -> GitHubStats | None:
        try:
            data = self._get(
                f"{GITHUB_API_URL}/repos/{owner}/{repo}",
                context=f"{owner}/{repo}",
                service="GitHub API",
                headers={"Accept": "application/vnd.github.v3+json"},
            )
        except InspectorError as e:
            logger.warning(f"Failed to fetch GitHub stats for {owner}/{repo}: {e.message}")
            return None
        if isinstance(data, dict) and isinstance(data.get("open_issues_count"), int):
            return GitHubStats(open_issues=data["open_issues_count"])
        return None

    def get_github_stats(self, repository_url: str) -> GitHubStats | None:
        """GitHub open-issue count for a repository URL, cached separately from package metadata."""
        github_repo = parse_github_repo(repository_url)
        if not github_repo:
            return None
        owner, repo = github_repo
        cache_key = f"github:{owner}/{repo}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            return GitHubStats.from_dict(cached)
        stats = self.fetch_github_stats(owner, repo)
        if stats is not None:
            self._cache_set(cache_key, stats.to_dict(), GITHUB_STATS_TTL)
            logger.info(f"Fetched GitHub stats for {owner}/{repo}: {stats.open_issues} open issues/PRs")
        return stats


def _license_name(value) -> str:
    # Older documents carry {"type": "MIT", "url": ...} instead of an SPDX string
    if isinstance(value, dict):
        value = value.get("type")
    if isinstance(value, str) and value:
        return value
    return "Unknown"
