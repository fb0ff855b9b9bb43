"""
Azure DevOps Advanced Security Enablement Report Analyzer

Analyzes the enablement CSV report to summarize a run:
- Repositories per result (Success / Failed / Pending)
- Per-project breakdown
- Projects whose enablement batch failed, with the captured error
- Projects left pending (declined or dry-run)
"""

import csv
import json
from collections import defaultdict, Counter
from typing import Dict, List
import sys


RESULT_CATEGORIES = ('Success', 'Failed', 'Pending')


def classify_result(result: str) -> str:
    """Map a report Result value to its category"""
    if result == 'Success':
        return 'Success'
    if result.startswith('Failed'):
        return 'Failed'
    if result == 'Pending':
        return 'Pending'
    return 'Other'


class EnablementReportAnalyzer:
    """Analyzer for Advanced Security enablement report data"""

    def __init__(self, csv_file: str):
        """Initialize analyzer with CSV file path"""
        self.csv_file = csv_file
        self.entries: List[Dict] = []
        self.load_data()

    def load_data(self):
        """Load CSV data"""
        print(f"Loading data from {self.csv_file}...")

        try:
            with open(self.csv_file, 'r', encoding='utf-8') as f:
                reader = csv.DictReader(f)
                self.entries = list(reader)

            print(f"Loaded {len(self.entries)} report entries")
        except (OSError, csv.Error) as e:
            print(f"Error loading CSV: {e}")
            sys.exit(1)

    def analyze_results(self) -> Dict:
        """Count repositories per result category"""
        counts = Counter(classify_result(entry['Result']) for entry in self.entries)
        total = len(self.entries)

        return {
            'total_repositories': total,
            'by_result': {category: counts.get(category, 0) for category in RESULT_CATEGORIES},
            'other': counts.get('Other', 0),
            'success_percentage': (counts.get('Success', 0) / total * 100) if total else 0,
        }

    def analyze_projects(self) -> Dict:
        """Analyze project-level outcomes"""
        project_stats = defaultdict(lambda: {'repositories': 0, 'Success': 0, 'Failed': 0, 'Pending': 0})

        for entry in self.entries:
            project = entry['Project']
            category = classify_result(entry['Result'])
            project_stats[project]['repositories'] += 1
            if category in RESULT_CATEGORIES:
                project_stats[project][category] += 1

        # Largest projects first
        projects = dict(sorted(
            project_stats.items(),
            key=lambda x: x[1]['repositories'],
            reverse=True
        ))

        return {
            'total_projects': len(projects),
            'avg_repositories_per_project': (
                sum(s['repositories'] for s in projects.values()) / len(projects)
                if projects else 0
            ),
            'projects': projects
        }

    def analyze_failures(self) -> Dict:
        """Collect failed projects with their error messages"""
        failures = {}

        for entry in self.entries:
            if classify_result(entry['Result']) != 'Failed':
                continue
            project = entry['Project']
            if project not in failures:
                failures[project] = {
                    'error': entry['Result'].removeprefix('Failed:').strip(),
                    'repositories': []
                }
            failures[project]['repositories'].append(entry['Repository'])

        return {
            'failed_projects': len(failures),
            'failed_repositories': sum(len(f['repositories']) for f in failures.values()),
            'failures': failures
        }

    def analyze_pending(self) -> Dict:
        """Collect projects whose repositories were never dispatched"""
        pending = defaultdict(list)

        for entry in self.entries:
            if classify_result(entry['Result']) == 'Pending':
                pending[entry['Project']].append(entry['Repository'])

        return {
            'pending_projects': len(pending),
            'pending_repositories': sum(len(repos) for repos in pending.values()),
            'projects': dict(pending)
        }

    def generate_report(self, output_file: str = None):
        """Generate comprehensive analysis report"""
        print("\n" + "=" * 80)
        print("ADVANCED SECURITY ENABLEMENT REPORT ANALYSIS")
        print("=" * 80)

        result_analysis = self.analyze_results()
        project_analysis = self.analyze_projects()
        failure_analysis = self.analyze_failures()
        pending_analysis = self.analyze_pending()

        report = {
            'summary': {
                'total_repositories': result_analysis['total_repositories'],
                'total_projects': project_analysis['total_projects'],
                'failed_projects': failure_analysis['failed_projects'],
                'pending_projects': pending_analysis['pending_projects']
            },
            'results': result_analysis,
            'projects': project_analysis,
            'failures': failure_analysis,
            'pending': pending_analysis
        }

        print(f"\nTOTAL STATISTICS:")
        print(f"  Total repositories: {report['summary']['total_repositories']:,}")
        print(f"  Total projects: {report['summary']['total_projects']:,}")

        print(f"\nRESULT BREAKDOWN:")
        for category, count in result_analysis['by_result'].items():
            print(f"  {category}: {count:,}")
        print(f"  Success rate: {result_analysis['success_percentage']:.1f}%")

        if failure_analysis['failures']:
            print(f"\nFAILED PROJECTS:")
            for project, failure in failure_analysis['failures'].items():
                print(f"    - {project}: {len(failure['repositories'])} repositories - {failure['error']}")

        if pending_analysis['projects']:
            print(f"\nPENDING PROJECTS (declined or dry-run):")
            for project, repos in pending_analysis['projects'].items():
                print(f"    - {project}: {len(repos)} repositories")

        print(f"\nPROJECT STATISTICS:")
        print(f"  Average repositories per project: {project_analysis['avg_repositories_per_project']:.1f}")

        if output_file:
            with open(output_file, 'w') as f:
                json.dump(report, f, indent=2, default=str)
            print(f"\nDetailed report saved to: {output_file}")

        print("=" * 80)

        return report


def main():
    """Main entry point"""
    if len(sys.argv) < 2:
        print("Usage: python analyze_enablement_report.py <report_csv_file> [output_json_file]")
        print("\nExample:")
        print("  python analyze_enablement_report.py codeql-enable-report-20250101-120000.csv analysis.json")
        sys.exit(1)

    csv_file = sys.argv[1]
    output_file = sys.argv[2] if len(sys.argv) > 2 else None

    analyzer = EnablementReportAnalyzer(csv_file)
    analyzer.generate_report(output_file)


if __name__ == '__main__':
    main()
