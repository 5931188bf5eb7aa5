"""
Migration summary reporting for the Grafana migrator.

Renders a MigrationSummary as tables and saves it as JSON and as one JSON
line per entity outcome.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional
from tabulate import tabulate

from grafana_migrator.core.models import ENTITY_TYPES, MigrationSummary, Outcome


class MigrationSummaryReporter:
    """Displays and persists the outcome of a migration run."""

    def __init__(self, output_dir: str = "outputs/migration-summary", mode: str = "MIGRATION"):
        """
        Initialize the reporter.

        Args:
            output_dir: Directory to save summary files
            mode: Label used in headings and file names ("MIGRATION" or "IMPORT")
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.mode = mode

    def get_summary(self, summary: MigrationSummary) -> Dict[str, Any]:
        """
        Get the complete migration summary as plain data.

        Returns:
            Dictionary containing all migration statistics
        """
        duration = None
        if summary.finished_at:
            duration = (summary.finished_at - summary.started_at).total_seconds()

        return {
            'mode': self.mode,
            'timestamp': (summary.finished_at or datetime.now()).isoformat(),
            'duration_seconds': duration,
            'succeeded': summary.succeeded,
            'aborted_reason': summary.aborted_reason,
            'class_failures': summary.class_failures,
            'remapped_datasources': summary.remapped_datasources,
            'counts': summary.counts(),
            'entities': [item.model_dump(mode='json') for item in summary.outcomes],
        }

    def table_rows(self, summary: MigrationSummary) -> List[List[Any]]:
        counts = summary.counts()
        rows = []
        for entity_type in ENTITY_TYPES:
            entity_counts = counts[entity_type]
            status = 'FAILED' if entity_type in summary.class_failures or entity_counts['failed'] else 'SUCCESS'
            rows.append([
                entity_type,
                status,
                entity_counts['created'],
                entity_counts['updated'],
                entity_counts['skipped'],
                entity_counts['failed'],
                summary.class_failures.get(entity_type, ''),
            ])
        return rows

    def display_table(self, summary: MigrationSummary):
        """Display migration statistics in tabular format."""
        print("\n" + "=" * 100)
        print(f"{self.mode} SUMMARY")
        print("=" * 100)

        headers = ['Entity Type', 'Status', 'Created', 'Updated', 'Skipped', 'Failed', 'Class Error']
        print(tabulate(self.table_rows(summary), headers=headers, tablefmt='grid'))

        problems = [item for item in summary.outcomes if item.detail]
        if problems:
            print("\nEntities needing attention:")
            print(tabulate(
                [[p.entity_type, p.entity_key, p.phase, p.outcome.value, p.detail] for p in problems],
                headers=['Entity Type', 'Key', 'Phase', 'Outcome', 'Detail'],
                tablefmt='simple'
            ))

        if summary.remapped_datasources:
            print("\nDatasources with a different uid on the destination "
                  "(dashboard references are not rewritten):")
            for source_uid, destination_uid in sorted(summary.remapped_datasources.items()):
                print(f"  {source_uid} -> {destination_uid}")

        print("\n" + "─" * 100)
        print(f"{'Created:':<20} {summary.total(Outcome.CREATED):>10}")
        print(f"{'Updated:':<20} {summary.total(Outcome.UPDATED):>10}")
        print(f"{'Skipped:':<20} {summary.total(Outcome.SKIPPED):>10}")
        print(f"{'Failed:':<20} {summary.total(Outcome.FAILED):>10}")

        data = self.get_summary(summary)
        if data['duration_seconds'] is not None:
            print(f"{'Total Duration:':<20} {data['duration_seconds']:>9.1f}s")

        if summary.aborted_reason:
            print(f"\nRun aborted: {summary.aborted_reason}")

        print("=" * 100 + "\n")

    def _file_stem(self) -> str:
        return self.mode.lower().replace(' ', '-')

    def save_json(self, summary: MigrationSummary, filename: Optional[str] = None) -> str:
        """
        Save migration statistics to JSON file.

        Args:
            summary: Summary to save
            filename: Optional custom filename. If not provided, generates timestamp-based name.

        Returns:
            Path to the saved JSON file
        """
        if not filename:
            timestamp = datetime.now().strftime("%Y-%m-%d-%H-%M-%S")
            filename = f"{self._file_stem()}-summary-{timestamp}.json"

        filepath = self.output_dir / filename

        with open(filepath, 'w') as f:
            json.dump(self.get_summary(summary), f, indent=2)

        return str(filepath)

    def save_latest_json(self, summary: MigrationSummary) -> str:
        return self.save_json(summary, f"{self._file_stem()}-summary-latest.json")

    def save_outcome_logs(self, summary: MigrationSummary) -> str:
        """
        Save one JSON line for the run and one per entity outcome.

        Returns:
            Path to the saved log file
        """
        timestamp = datetime.now().strftime("%Y-%m-%d-%H-%M-%S")
        filepath = self.output_dir / f"{self._file_stem()}-outcomes-{timestamp}.jsonl"
        data = self.get_summary(summary)

        with open(filepath, 'w') as f:
            f.write(json.dumps({
                "log_type": "migration_summary",
                "mode": data['mode'],
                "timestamp": data['timestamp'],
                "duration_seconds": data['duration_seconds'],
                "succeeded": data['succeeded'],
                "aborted_reason": data['aborted_reason'],
                "class_failures": data['class_failures'],
            }) + '\n')

            for entity in data['entities']:
                f.write(json.dumps({
                    "log_type": "entity_outcome",
                    "mode": data['mode'],
                    "timestamp": data['timestamp'],
                    **entity
                }) + '\n')

        return str(filepath)

    def display_and_save(self, summary: MigrationSummary) -> List[str]:
        """Display table and save JSON files."""
        self.display_table(summary)

        saved = [
            self.save_json(summary),
            self.save_latest_json(summary),
            self.save_outcome_logs(summary),
        ]
        for path in saved:
            print(f"Summary saved to: {path}")
        print("")
        return saved
