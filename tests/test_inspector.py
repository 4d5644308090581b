import sys
import unittest
from pathlib import Path
from unittest import mock

# Add parent directory to path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

from fakes import FakeOsvClient, FakeRegistry, osv_record
from npm_inspector.errors import ErrorKind, InspectorError
from npm_inspector.inspector import group_by_severity, inspect_package
from npm_inspector.models import VulnerabilityRecord
from npm_inspector.resolver import DependencyResolver
from npm_inspector.scanner import VulnerabilityScanner

CRITICAL_VECTOR = "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H"

PACKAGES = {
    "app": {"latest": "2.0.0", "versions": {"2.0.0": {"lodash": "^4.17.0", "ghost": "^1.0.0"}}},
    "lodash": {"latest": "4.17.20", "versions": {"4.17.20": {"tiny": "^1.0.0"}}},
    "tiny": {"latest": "1.0.1", "versions": {"1.0.1": {}}},
    "solo": {"latest": "0.1.0", "versions": {"0.1.0": {}}},
}


class TestInspectPackage(unittest.TestCase):
    def setUp(self):
        self.registry = FakeRegistry(PACKAGES, broken={"ghost"})
        self.osv = FakeOsvClient(
            advisories={"lodash": ["GHSA-p6mc"]},
            details={"GHSA-p6mc": osv_record("GHSA-p6mc", CRITICAL_VECTOR, summary="Command injection in lodash", aliases=["CVE-2021-23337"])},
        )

    def _inspect(self, name="app", summarizer=None):
        return inspect_package(
            name,
            registry=self.registry,
            resolver=DependencyResolver(self.registry),
            scanner=VulnerabilityScanner(self.osv),
            summarizer=summarizer,
        )

    def test_report_shape(self):
        report = self._inspect()
        self.assertEqual(report["packageInfo"]["name"], "app")
        self.assertEqual(report["packageInfo"]["version"], "2.0.0")
        tree = report["dependencyTree"]
        self.assertEqual(tree["direct"], ["ghost", "lodash"])
        self.assertEqual(tree["directCount"], 2)
        self.assertEqual(tree["transitive"], ["tiny"])
        self.assertEqual(tree["total"], 2)
        self.assertEqual(tree["skipped"], ["ghost"])
        self.assertEqual(self.osv.batches, [{"lodash": "4.17.20", "tiny": "1.0.1"}])

        self.assertEqual(report["totalVulns"], 1)
        self.assertEqual(report["criticalCount"], 1)
        self.assertEqual(report["highCount"], 0)
        self.assertEqual(report["topVulnerabilities"][0]["cveId"], "CVE-2021-23337")
        self.assertEqual(len(report["vulnerabilitiesBySeverity"]["critical"]), 1)
        self.assertIsNone(report["aiSummary"])
        self.assertEqual(report["maintenanceInfo"]["maintenanceStatus"], "Unknown")
        self.assertIn("analyzedAt", report["metadata"])

    def test_zero_dependencies_skip_vulnerability_query(self):
        report = self._inspect("solo")
        self.assertEqual(report["dependencyTree"]["total"], 0)
        self.assertEqual(report["vulnerabilities"], [])
        self.assertEqual(self.osv.batches, [])

    def test_missing_root_is_fatal(self):
        with self.assertRaises(InspectorError) as ctx:
            self._inspect("not-published")
        self.assertEqual(ctx.exception.kind, ErrorKind.PACKAGE_NOT_FOUND)

    def test_invalid_root_name_is_fatal(self):
        with self.assertRaises(InspectorError) as ctx:
            self._inspect("Not A Name")
        self.assertEqual(ctx.exception.kind, ErrorKind.VALIDATION_ERROR)
        self.assertEqual(sum(self.registry.latest_fetches.values()), 0)

    def test_vulnerability_failure_is_partial(self):
        self.osv.failing_batches = {1}
        report = self._inspect()
        self.assertEqual(report["vulnerabilities"], [])
        self.assertEqual(report["dependencyTree"]["total"], 2)

    def test_summary_is_attached(self):
        summary = {"riskLevel": "High", "maintenanceStatus": "Stale", "licenseCompatibility": "Permissive"}
        summarizer = mock.Mock(return_value=summary)
        report = self._inspect(summarizer=summarizer)
        self.assertEqual(report["aiSummary"], summary)
        self.assertEqual(report["maintenanceInfo"]["maintenanceStatus"], "Stale")
        self.assertEqual(report["maintenanceInfo"]["licenseCompatibility"], "Permissive")
        package, vulnerabilities = summarizer.call_args[0]
        self.assertEqual(package.name, "app")
        self.assertEqual([v.id for v in vulnerabilities], ["GHSA-p6mc"])

    def test_summary_failure_is_partial(self):
        summarizer = mock.Mock(side_effect=InspectorError(ErrorKind.AI_ERROR, "bad answer"))
        report = self._inspect(summarizer=summarizer)
        self.assertIsNone(report["aiSummary"])

    def test_unexpected_error_is_wrapped(self):
        scanner = mock.Mock()
        scanner.check_vulnerabilities.side_effect = KeyError("boom")
        with self.assertRaises(InspectorError) as ctx:
            inspect_package("app", registry=self.registry, resolver=DependencyResolver(self.registry), scanner=scanner)
        self.assertEqual(ctx.exception.kind, ErrorKind.ANALYSIS_ERROR)
        self.assertIsInstance(ctx.exception.__cause__, KeyError)


class TestGrouping(unittest.TestCase):
    def test_groups_sorted_by_score(self):
        vulns = [
            VulnerabilityRecord(package="a", id="1", severity="High", cvss_score=7.1),
            VulnerabilityRecord(package="b", id="2", severity="High", cvss_score=8.9),
            VulnerabilityRecord(package="c", id="3", severity="Unknown"),
        ]
        grouped = group_by_severity(vulns)
        self.assertEqual([v.id for v in grouped["high"]], ["2", "1"])
        self.assertEqual([v.id for v in grouped["unknown"]], ["3"])
        self.assertEqual(grouped["critical"], [])


if __name__ == '__main__':
    unittest.main()
