import threading
from collections import Counter

from npm_inspector.errors import ErrorKind, InspectorError
from npm_inspector.models import PackageMetadata
from npm_inspector.registry_client import max_satisfying

_NO_BODY = object()


class FakeResponse:
    def __init__(self, status_code=200, json_body=_NO_BODY, headers=None, text=""):
        self.status_code = status_code
        self._json_body = json_body
        self.headers = headers or {}
        self.text = text

    def json(self):
        if self._json_body is _NO_BODY:
            raise ValueError("No JSON object could be decoded")
        return self._json_body


class FakeSession:
    """
    Stands in for requests.Session. `routes` maps URL -> list of responses (or
    exceptions to raise), consumed in order; the last entry repeats.
    """

    def __init__(self, routes=None):
        self.routes = {url: list(responses) for url, responses in (routes or {}).items()}
        self.calls = []
        self._lock = threading.Lock()

    def request(self, method, url, json=None, headers=None, timeout=None):
        with self._lock:
            self.calls.append((method, url, json))
            responses = self.routes.get(url)
            if not responses:
                return FakeResponse(404, {"error": "Not found"})
            outcome = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def urls(self):
        return [url for _, url, _ in self.calls]


class FakeRegistry:
    """
    In-memory registry exposing the methods the resolver calls.

    `packages` maps name -> {"latest": "x.y.z", "versions": {"x.y.z": {dep: range}}}.
    Names in `broken` fail every call; names in `unresolvable` fail range
    resolution only.
    """

    def __init__(self, packages, broken=(), unresolvable=()):
        self.packages = packages
        self.broken = set(broken)
        self.unresolvable = set(unresolvable)
        self.version_fetches = Counter()
        self.resolve_calls = Counter()
        self.latest_fetches = Counter()
        self._lock = threading.Lock()

    def _package(self, name):
        if name in self.broken or name not in self.packages:
            raise InspectorError(ErrorKind.PACKAGE_NOT_FOUND, f"{name} not found")
        return self.packages[name]

    def resolve_version_from_range(self, name, range_expr):
        with self._lock:
            self.resolve_calls[name] += 1
        if name in self.unresolvable:
            raise InspectorError(ErrorKind.VERSION_RESOLUTION_ERROR, f"Could not resolve version for {name}@{range_expr}")
        package = self._package(name)
        latest = package["latest"]
        if max_satisfying([latest], range_expr):
            return latest
        return max_satisfying(list(package["versions"]), range_expr) or latest

    def fetch_package_version_data(self, name, version):
        with self._lock:
            self.version_fetches[name] += 1
        package = self._package(name)
        return PackageMetadata(name=name, version=version, dependencies=dict(package["versions"].get(version, {})))

    def fetch_package_data(self, name, include_github_stats=True):
        with self._lock:
            self.latest_fetches[name] += 1
        package = self._package(name)
        latest = package["latest"]
        return PackageMetadata(name=name, version=latest, dependencies=dict(package["versions"][latest]))


class FakeOsvClient:
    """`advisories` maps package name -> advisory ids; `details` maps id -> OSV record (or None)."""

    def __init__(self, advisories=None, details=None, failing_batches=()):
        self.advisories = advisories or {}
        self.details = details or {}
        self.failing_batches = set(failing_batches)
        self.batches = []
        self.detail_requests = Counter()
        self._lock = threading.Lock()

    def query_batch(self, dependencies):
        self.batches.append(dict(dependencies))
        if len(self.batches) in self.failing_batches:
            raise InspectorError(ErrorKind.API_ERROR, "OSV API temporarily unavailable.", 503)
        return [list(self.advisories.get(name, [])) for name in dependencies]

    def get_vuln_details(self, vuln_id):
        with self._lock:
            self.detail_requests[vuln_id] += 1
        return self.details.get(vuln_id)


def osv_record(vuln_id, vector=None, vector_type="CVSS_V3", summary="", details="", aliases=()):
    record = {"id": vuln_id, "aliases": list(aliases), "summary": summary, "details": details}
    if vector:
        record["severity"] = [{"type": vector_type, "score": vector}]
    return record


def no_sleep(seconds):
    pass
