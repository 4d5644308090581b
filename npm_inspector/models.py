# npm_inspector/models.py
from dataclasses import dataclass, field, replace
from typing import Optional

# --- Severity policy (CVSS base score thresholds) ---
SEVERITY_CRITICAL = "Critical"
SEVERITY_HIGH = "High"
SEVERITY_MEDIUM = "Medium"
SEVERITY_LOW = "Low"
SEVERITY_UNKNOWN = "Unknown"

SEVERITY_THRESHOLDS = (
    (9.0, SEVERITY_CRITICAL),
    (7.0, SEVERITY_HIGH),
    (4.0, SEVERITY_MEDIUM),
)

# Lower rank sorts first
SEVERITY_RANK = {
    SEVERITY_CRITICAL: 0,
    SEVERITY_HIGH: 1,
    SEVERITY_MEDIUM: 2,
    SEVERITY_LOW: 3,
    SEVERITY_UNKNOWN: 4,
}

NO_DESCRIPTION = "No description available"
NO_SUMMARY = "No summary available"


def classify_severity(cvss_score: float | None) -> str:
    if cvss_score is None:
        return SEVERITY_UNKNOWN
    for threshold, label in SEVERITY_THRESHOLDS:
        if cvss_score >= threshold:
            return label
    return SEVERITY_LOW


@dataclass(frozen=True)
class GitHubStats:
    open_issues: int

    def to_dict(self) -> dict:
        return {"openIssues": self.open_issues}

    @classmethod
    def from_dict(cls, data: dict) -> "GitHubStats":
        return cls(open_issues=int(data["openIssues"]))


@dataclass(frozen=True)
class PackageMetadata:
    name: str
    version: str  # exact version, never a range
    dependencies: dict = field(default_factory=dict)  # name -> declared range
    license: str = "Unknown"
    repository: str = ""
    maintainers: list = field(default_factory=list)
    description: str = ""
    last_publish_date: Optional[str] = None
    github_stats: Optional[GitHubStats] = None

    def with_github_stats(self, stats: GitHubStats | None) -> "PackageMetadata":
        return replace(self, github_stats=stats)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "dependencies": dict(self.dependencies),
            "license": self.license,
            "repository": self.repository,
            "maintainers": list(self.maintainers),
            "lastPublishDate": self.last_publish_date,
            "githubStats": self.github_stats.to_dict() if self.github_stats else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PackageMetadata":
        stats = data.get("githubStats")
        return cls(
            name=data["name"],
            version=data["version"],
            dependencies=dict(data.get("dependencies") or {}),
            license=data.get("license") or "Unknown",
            repository=data.get("repository") or "",
            maintainers=list(data.get("maintainers") or []),
            description=data.get("description") or "",
            last_publish_date=data.get("lastPublishDate"),
            github_stats=GitHubStats.from_dict(stats) if stats else None,
        )


@dataclass(frozen=True)
class PackageVersions:
    """Published versions of a package plus its ``latest`` dist-tag."""
    versions: list
    latest: Optional[str] = None


@dataclass(frozen=True)
class GraphNode:
    name: str
    version: str
    depth: int  # >= 1, distance from the root along the first path found
    dependencies: dict = field(default_factory=dict)


@dataclass
class DependencyResolution:
    direct_exact: dict = field(default_factory=dict)
    transitive: dict = field(default_factory=dict)
    skipped: list = field(default_factory=list)

    @property
    def all_dependencies(self) -> dict:
        combined = dict(self.transitive)
        combined.update(self.direct_exact)  # direct wins
        return combined


@dataclass(frozen=True)
class VulnerabilityRecord:
    package: str
    id: str
    severity: str = SEVERITY_UNKNOWN
    cvss_score: Optional[float] = None
    cve_id: Optional[str] = None
    summary: str = NO_SUMMARY
    details: str = ""
    description: str = NO_DESCRIPTION
    references: list = field(default_factory=list)
    published: Optional[str] = None
    modified: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.package, self.id)

    def sort_key(self) -> tuple:
        score = self.cvss_score if self.cvss_score is not None else 0.0
        return (SEVERITY_RANK.get(self.severity, SEVERITY_RANK[SEVERITY_UNKNOWN]), -score, self.package, self.id)

    def to_dict(self) -> dict:
        return {
            "package": self.package,
            "id": self.id,
            "cveId": self.cve_id,
            "severity": self.severity,
            "cvssScore": self.cvss_score,
            "description": self.description,
            "summary": self.summary,
            "details": self.details,
            "references": list(self.references),
            "published": self.published,
            "modified": self.modified,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "VulnerabilityRecord":
        return cls(
            package=data["package"],
            id=data["id"],
            severity=data.get("severity", SEVERITY_UNKNOWN),
            cvss_score=data.get("cvssScore"),
            cve_id=data.get("cveId"),
            summary=data.get("summary", NO_SUMMARY),
            details=data.get("details", ""),
            description=data.get("description", NO_DESCRIPTION),
            references=list(data.get("references") or []),
            published=data.get("published"),
            modified=data.get("modified"),
        )
