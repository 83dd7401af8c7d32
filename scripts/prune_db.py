import argparse
import sys
import os
from datetime import datetime, timedelta, UTC
from sqlmodel import Session, create_engine, select

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from main import PostRecord
from settings import settings

def prune_old_records(days: int, status: str = None) -> int:
    engine = create_engine(f"sqlite:///{settings.db_path}")
    cutoff = datetime.now(UTC).replace(tzinfo=None) - timedelta(days=days)

    with Session(engine) as session:
        statement = select(PostRecord).where(PostRecord.processed_at < cutoff)
        if status:
            statement = statement.where(PostRecord.status == status)
        old_records = session.exec(statement).all()

        for record in old_records:
            session.delete(record)

        session.commit()
        print(f"Pruned {len(old_records)} post history records older than {days} days.")
        return len(old_records)

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Prune old post history from the SQLite database. Dedup state in the JSON files is untouched.")
    parser.add_argument("--days", type=int, default=90, help="Number of days of records to keep (default: 90)")
    parser.add_argument("--status", choices=["published", "failed"], default=None, help="Only prune records with this outcome")
    args = parser.parse_args()

    prune_old_records(args.days, args.status)
