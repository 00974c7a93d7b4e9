from __future__ import annotations

import argparse

from bella_napoli.config import load_settings
from bella_napoli.db.engine import get_engine
from bella_napoli.jobs.runner import build_refresh_scheduler


def main() -> int:
    parser = argparse.ArgumentParser(description="Show dynamic table state and recent refreshes.")
    parser.add_argument("--table", default=None, help="Only show history for this table.")
    parser.add_argument("--limit", type=int, default=10, help="History rows to show (default: 10).")
    args = parser.parse_args()

    settings = load_settings()
    engine = get_engine(settings)
    refresh = build_refresh_scheduler(settings, engine)

    print("dynamic_tables:")
    for d in refresh.describe():
        lag = d.get("current_lag_seconds")
        print(
            f"- name={d['name']} target_lag={d['target_lag']} effective_lag={d['effective_lag']} "
            f"mode={d['refresh_mode']} state={d['scheduling_state']} rows={d['row_count']} "
            f"data_timestamp={d['data_timestamp']} current_lag_s={None if lag is None else int(lag)} "
            f"last_action={d['last_refresh_action']} failures={d['consecutive_failures']}"
        )

    print(f"last_{args.limit}_refreshes:")
    for r in refresh.history(args.table, limit=args.limit):
        print(
            f"- table={r.get('table_name')} trigger={r.get('refresh_trigger')} "
            f"action={r.get('refresh_action')} state={r.get('state')} "
            f"started_at={r.get('started_at')} finished_at={r.get('finished_at')} "
            f"changed={r.get('changed_source_rows')} +{r.get('rows_inserted')} -{r.get('rows_deleted')} "
            f"error_message={r.get('error_message')}"
        )

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
