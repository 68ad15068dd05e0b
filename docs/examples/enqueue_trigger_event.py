import os
import sys

import requests

base_url = os.getenv("CRM_AUTOMATION_BASE_URL", "http://localhost:8000").rstrip("/")
token = os.getenv("INTERNAL_API_TOKEN")

if not token:
    raise RuntimeError("INTERNAL_API_TOKEN is required")

headers = {"X-Internal-Token": token}


def main(argv: list[str]) -> int:
    if len(argv) < 3:
        print("usage: enqueue_trigger_event.py TRIGGER ENTITY_TYPE ENTITY_ID [RULE_ID]", file=sys.stderr)
        return 2
    trigger, entity_type, entity_id = argv[:3]

    event_response = requests.post(
        f"{base_url}/automations/events",
        headers={**headers, "Idempotency-Key": f"{trigger}:{entity_type}:{entity_id}"},
        json={"trigger": trigger, "entity_type": entity_type, "entity_id": entity_id},
        timeout=15,
    )
    event_response.raise_for_status()
    accepted = event_response.json()
    print(f"Job {accepted['job_id']} queued={accepted['queued']}")

    if len(argv) > 3:
        logs_response = requests.get(
            f"{base_url}/automations/{argv[3]}/logs",
            headers=headers,
            params={"limit": 5, "offset": 0},
            timeout=15,
        )
        logs_response.raise_for_status()
        for row in logs_response.json()["items"]:
            print(f"{row['created_at']} {row['status']} {row['entity_type']}:{row['entity_id']} {row['error'] or ''}")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main(sys.argv[1:]))
    except requests.RequestException as exc:
        print(f"Automation API request failed: {exc}", file=sys.stderr)
        raise SystemExit(1)
