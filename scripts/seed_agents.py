import json
import sys
from typing import List

from pathlib import Path


def _load_agents(path: Path) -> List[dict]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError("agent seed file must be a JSON list")
    return data


def main() -> int:
    if len(sys.argv) < 2:
        print("usage: python scripts/seed_agents.py <agents.json>")
        return 1

    seed_path = Path(sys.argv[1])
    if not seed_path.exists():
        print(f"seed file not found: {seed_path}")
        return 1

    sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "gocd-api"))
    from models import Agent
    from storage import build_storage

    storage = build_storage()
    inserted = 0
    skipped = 0
    for item in _load_agents(seed_path):
        uuid = item.get("uuid") if isinstance(item, dict) else None
        if not uuid:
            print("skipping agent without uuid")
            skipped += 1
            continue
        if storage.get_agent(uuid):
            skipped += 1
            continue
        storage.upsert_agent(Agent(**item))
        inserted += 1

    print(f"agents inserted={inserted} skipped={skipped}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
