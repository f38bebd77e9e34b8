"""
Alert Rule Generator for Prometheus AlertManager

Generates alert rule definitions for the index rebuild service. Rules cover
abandoned indexes, repairs that stop making progress, replay failures and a
scheduler that stopped running.
"""

import logging
from typing import Any, Dict

import yaml

logger = logging.getLogger(__name__)


class AlertRuleGenerator:
    """Generates Prometheus AlertManager alert rules."""

    def __init__(self, stalled_after_seconds: int = 3600, cycle_period_seconds: int = 10):
        """
        Initialize alert rule generator.

        Args:
            stalled_after_seconds: Divergence age at which repair counts as stalled
            cycle_period_seconds: Configured scheduler period
        """
        self.stalled_after_seconds = stalled_after_seconds
        self.cycle_period_seconds = cycle_period_seconds
        logger.info("AlertRuleGenerator initialized")

    def generate_alert_rules(self) -> Dict[str, Any]:
        """
        Generate complete alert rule configuration.

        Returns:
            Dict with alert rule groups in Prometheus format
        """
        groups = [
            self._generate_repair_alerts(),
            self._generate_scheduler_alerts(),
        ]

        config = {
            "groups": groups
        }

        logger.info(f"Generated {len(groups)} alert rule groups")
        return config

    def _generate_repair_alerts(self) -> Dict[str, Any]:
        """Generate index repair alerts."""
        return {
            "name": "index_rebuild_repair",
            "interval": "1m",
            "rules": [
                {
                    "alert": "IndexRebuildAbandoned",
                    "expr": "increase(index_rebuild_abandoned_total[15m]) > 0",
                    "for": "0m",
                    "labels": {
                        "severity": "critical",
                        "component": "index_rebuild"
                    },
                    "annotations": {
                        "summary": "Automatic index repair abandoned",
                        "description": "Repair of indexes on {{ $labels.table }} was abandoned. The indexes are DISABLED and need a manual rebuild."
                    }
                },
                {
                    "alert": "IndexRebuildStalled",
                    "expr": f"index_rebuild_divergence_lag_seconds > {self.stalled_after_seconds}",
                    "for": "10m",
                    "labels": {
                        "severity": "warning",
                        "component": "index_rebuild"
                    },
                    "annotations": {
                        "summary": "Index repair not catching up",
                        "description": "Earliest divergence on {{ $labels.table }} is {{ $value }}s old "
                                       f"(threshold: {self.stalled_after_seconds}s)"
                    }
                },
                {
                    "alert": "IndexReplayFailing",
                    "expr": "rate(index_rebuild_batches_total{outcome=\"failed\"}[15m]) > 0",
                    "for": "15m",
                    "labels": {
                        "severity": "warning",
                        "component": "index_rebuild"
                    },
                    "annotations": {
                        "summary": "Index replay failing",
                        "description": "Replays for {{ $labels.table }} keep failing and are retried every cycle"
                    }
                },
                {
                    "alert": "MixedDivergenceCauses",
                    "expr": "increase(index_rebuild_mixed_causes_total[1h]) > 0",
                    "for": "0m",
                    "labels": {
                        "severity": "info",
                        "component": "index_rebuild"
                    },
                    "annotations": {
                        "summary": "Indexes disagree on divergence cause",
                        "description": "Indexes on {{ $labels.table }} diverged at the same time with different causes"
                    }
                }
            ]
        }

    def _generate_scheduler_alerts(self) -> Dict[str, Any]:
        """Generate scheduler health alerts."""
        # allow a few missed periods before firing
        silent_for = max(60, self.cycle_period_seconds * 6)
        return {
            "name": "index_rebuild_scheduler",
            "interval": "30s",
            "rules": [
                {
                    "alert": "IndexRebuildNotRunning",
                    "expr": f"time() - index_rebuild_last_cycle_timestamp_seconds > {silent_for}",
                    "for": "5m",
                    "labels": {
                        "severity": "critical",
                        "component": "index_rebuild"
                    },
                    "annotations": {
                        "summary": "Index rebuild scheduler not running",
                        "description": f"No rebuild cycle has finished in the last {silent_for}s"
                    }
                },
                {
                    "alert": "IndexRebuildCycleFailures",
                    "expr": "rate(index_rebuild_cycles_total{status=\"failed\"}[15m]) > 0",
                    "for": "15m",
                    "labels": {
                        "severity": "warning",
                        "component": "index_rebuild"
                    },
                    "annotations": {
                        "summary": "Index rebuild cycles failing",
                        "description": "Rebuild cycles are aborting, usually because the ledger is unreachable"
                    }
                },
                {
                    "alert": "LedgerConflictStorm",
                    "expr": "rate(index_rebuild_ledger_conflicts_total[10m]) > 1",
                    "for": "10m",
                    "labels": {
                        "severity": "warning",
                        "component": "index_rebuild"
                    },
                    "annotations": {
                        "summary": "Frequent ledger conflicts",
                        "description": "Ledger updates for {{ $labels.table }} conflict {{ $value }} times/sec"
                    }
                }
            ]
        }

    def export_to_yaml(self, output_file: str) -> None:
        """
        Export alert rules to YAML file.

        Args:
            output_file: Path to output YAML file
        """
        rules = self.generate_alert_rules()

        with open(output_file, 'w') as f:
            yaml.dump(rules, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Alert rules exported to {output_file}")

    def get_alert_summary(self) -> Dict[str, int]:
        """
        Get summary of alert rules.

        Returns:
            Dict with counts by severity
        """
        rules = self.generate_alert_rules()

        summary = {
            "total_groups": len(rules["groups"]),
            "total_alerts": 0,
            "critical": 0,
            "warning": 0,
            "info": 0
        }

        for group in rules["groups"]:
            for rule in group["rules"]:
                summary["total_alerts"] += 1
                severity = rule["labels"].get("severity", "unknown")
                if severity in summary:
                    summary[severity] += 1

        return summary
