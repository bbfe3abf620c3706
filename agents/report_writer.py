"""Report writers: one per output format, plus the cost summary."""

import json
import os

import structlog

from utils.repo import report_filename
from utils.reports import RENDERERS

log = structlog.get_logger(__name__)


class ReportWriter:
    """Writes one format of the aggregate into reports_dir. No LLM calls."""

    def __init__(self, fmt, reports_dir, stamp=None):
        if fmt not in RENDERERS:
            raise ValueError(f"Unknown report format '{fmt}'. Choose from: {sorted(RENDERERS)}")
        self.fmt = fmt
        self.name = f"write-{fmt}"
        self.reports_dir = reports_dir
        self.stamp = stamp

    def write(self, aggregate):
        os.makedirs(self.reports_dir, exist_ok=True)
        path = os.path.join(self.reports_dir, report_filename(self.fmt, self.stamp))
        with open(path, "w", encoding="utf-8") as f:
            f.write(RENDERERS[self.fmt](aggregate))
        log.info("report_written", format=self.fmt, path=path)
        return path


class CostSummaryWriter:
    """Writes the ledger summary (JSON) next to the reports."""

    name = "write-cost-summary"

    def __init__(self, reports_dir, stamp=None):
        self.reports_dir = reports_dir
        self.stamp = stamp

    def write(self, ledger):
        os.makedirs(self.reports_dir, exist_ok=True)
        path = os.path.join(self.reports_dir,
                            report_filename("json", self.stamp).replace("-report-", "-cost-"))
        data = dict(ledger.summary(), calls=ledger.to_dict()["calls"])
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        log.info("cost_summary_written", path=path)
        return path
