import os
import sys

import requests

base_url = os.getenv("PRICERUN_BASE_URL", "http://localhost:8000").rstrip("/")
tenant_id = os.getenv("PRICERUN_TENANT_ID")
project_id = os.getenv("PRICERUN_PROJECT_ID")

if not tenant_id or not project_id:
    raise RuntimeError("PRICERUN_TENANT_ID and PRICERUN_PROJECT_ID are required")

headers = {"X-Tenant-Id": tenant_id, "X-Project-Id": project_id, "X-Actor": "smoke-test"}


def main() -> int:
    rule_response = requests.post(
        f"{base_url}/rules",
        headers=headers,
        json={
            "name": "Smoke test uplift",
            "selector": {"sku_pattern": os.getenv("PRICERUN_SKU_PATTERN", "*")},
            "transform": {"op": "percent", "value": 0},
        },
        timeout=15,
    )
    rule_response.raise_for_status()
    rule = rule_response.json()

    run_response = requests.post(f"{base_url}/rules/{rule['id']}/materialize", headers=headers, timeout=30)
    run_response.raise_for_status()
    run = run_response.json()
    print(f"Run {run['id']}: {len(run['targets'])} targets, {len(run['explain']['skipped'])} skipped")

    queue_response = requests.post(f"{base_url}/runs/{run['id']}/queue", headers=headers, timeout=15)
    queue_response.raise_for_status()

    outbox_response = requests.post(f"{base_url}/outbox/run", headers=headers, params={"limit": 10}, timeout=60)
    outbox_response.raise_for_status()

    progress_response = requests.get(f"{base_url}/runs/{run['id']}/progress", headers=headers, timeout=15)
    progress_response.raise_for_status()
    progress = progress_response.json()
    print(f"Status: {progress['status']} ({progress['percent_complete']}% complete)")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except requests.RequestException as exc:
        print(f"Pipeline probe failed: {exc}", file=sys.stderr)
        raise SystemExit(1)
