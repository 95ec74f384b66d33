import json
from datetime import date
from pathlib import Path

import duckdb
import pandas as pd
import structlog

from visitrack.schemas.analytics import AnalyticsSummary

logger = structlog.get_logger()

SUMMARY_TABLE = "daily_summaries"


class SummaryExporter:
    """Writes daily summary snapshots to JSON files and a DuckDB table"""

    def __init__(self, export_dir: str, duckdb_path: str):
        self.export_dir = Path(export_dir)
        self.duckdb_path = Path(duckdb_path)

    def write_json(self, day: date, summary: AnalyticsSummary) -> Path:
        self.export_dir.mkdir(parents=True, exist_ok=True)
        path = self.export_dir / f"summary-{day.isoformat()}.json"
        path.write_text(summary.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
        return path

    def to_frame(self, day: date, summary: AnalyticsSummary) -> pd.DataFrame:
        """One flat row; nested parts are stored as JSON strings"""
        row = summary.model_dump(exclude={"period", "top_pages", "event_breakdown"})
        row["day"] = day.isoformat()
        row["period_start"] = summary.period.start.isoformat()
        row["period_end"] = summary.period.end.isoformat()
        row["top_pages"] = json.dumps([p.model_dump(by_alias=True) for p in summary.top_pages])
        row["event_breakdown"] = json.dumps(summary.event_breakdown, sort_keys=True)
        return pd.DataFrame([row])

    def write_duckdb(self, day: date, summary: AnalyticsSummary) -> int:
        df = self.to_frame(day, summary)
        self.duckdb_path.parent.mkdir(parents=True, exist_ok=True)

        con = duckdb.connect(str(self.duckdb_path))
        try:
            con.execute(f"CREATE TABLE IF NOT EXISTS {SUMMARY_TABLE} AS SELECT * FROM df LIMIT 0")
            # Re-exporting a day replaces its row
            con.execute(f"DELETE FROM {SUMMARY_TABLE} WHERE day = ?", [day.isoformat()])
            con.append(SUMMARY_TABLE, df)
        finally:
            con.close()
        return len(df)

    def export(self, day: date, summary: AnalyticsSummary) -> Path:
        path = self.write_json(day, summary)
        rows = self.write_duckdb(day, summary)
        logger.info("summary_exported", day=day.isoformat(), path=str(path), rows=rows)
        return path
