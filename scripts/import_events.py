"""
CSV Import Script for Events

Usage:
    python scripts/import_events.py <path-to-csv>

CSV Format:
    event_id,timestamp,user_id,session_id,event_type,page_url,properties_json

Rows go through the same ingestion path as the API, so sessions and
visitor totals are updated and already imported event ids are skipped.
"""

import asyncio
import csv
import json
import sys
from pathlib import Path

# Add parent directory to path to import visitrack modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from visitrack.core.config import settings
from visitrack.core.database import Database
from visitrack.services.events import EventStore
from visitrack.services.ledger import VisitorLedger
from visitrack.services.sessions import SessionTracker

REQUIRED_HEADERS = {'event_id', 'timestamp', 'user_id', 'session_id', 'event_type', 'properties_json'}


def row_to_payload(row: dict) -> dict:
    properties = {}
    if row['properties_json'] and row['properties_json'].strip():
        properties = json.loads(row['properties_json'])

    return {
        "eventId": row['event_id'] or None,
        "timestamp": row['timestamp'].replace('Z', '+00:00') if row['timestamp'] else None,
        "userId": row['user_id'],
        "sessionId": row['session_id'],
        "eventType": row['event_type'],
        "pageUrl": row.get('page_url') or None,
        "properties": properties,
    }


async def import_csv(file_path: str, batch_size: int = 1000):
    """
    Import events from CSV file

    Args:
        file_path: Path to CSV file
        batch_size: Number of events to process per batch
    """
    file_path = Path(file_path)

    if not file_path.exists():
        print(f"Error: File not found: {file_path}")
        sys.exit(1)

    print(f"Starting import from: {file_path}")

    database = Database(settings.database_url)

    total_processed = 0
    total_accepted = 0
    total_rejected = 0

    async with database.session_factory() as db:
        ledger = VisitorLedger(db)
        store = EventStore(db, SessionTracker(db, ledger), ledger)

        with open(file_path, 'r', encoding='utf-8') as f:
            reader = csv.DictReader(f)

            # Validate headers
            if not REQUIRED_HEADERS.issubset(reader.fieldnames or []):
                print(f"Error: CSV must have headers: {REQUIRED_HEADERS}")
                print(f"Found headers: {reader.fieldnames}")
                sys.exit(1)

            batch = []

            for i, row in enumerate(reader, 1):
                try:
                    batch.append(row_to_payload(row))
                except json.JSONDecodeError as e:
                    print(f"Error on row {i}: {e}")
                    total_rejected += 1
                    continue

                if len(batch) >= batch_size:
                    result = await store.ingest_batch(batch)
                    total_processed += result.total_received
                    total_accepted += result.accepted
                    total_rejected += len(result.rejected)

                    print(f"Processed {total_processed} events | "
                          f"Accepted: {total_accepted} | "
                          f"Rejected: {total_rejected}")

                    batch = []

            # Process remaining events
            if batch:
                result = await store.ingest_batch(batch)
                total_processed += result.total_received
                total_accepted += result.accepted
                total_rejected += len(result.rejected)

    await database.dispose()

    print("\n" + "=" * 50)
    print("Import completed!")
    print(f"Total processed: {total_processed}")
    print(f"Total accepted: {total_accepted}")
    print(f"Total rejected: {total_rejected}")
    print("=" * 50)


def main():
    if len(sys.argv) != 2:
        print("Usage: python scripts/import_events.py <path-to-csv>")
        sys.exit(1)

    asyncio.run(import_csv(sys.argv[1]))


if __name__ == "__main__":
    main()
