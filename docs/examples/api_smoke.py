import os
import sys

import requests

base_url = os.getenv("REVIEWFLOW_BASE_URL", "http://localhost:8000").rstrip("/")
identifier = os.getenv("REVIEWFLOW_LOGIN")
password = os.getenv("REVIEWFLOW_PASSWORD")

if not identifier or not password:
    raise RuntimeError("REVIEWFLOW_LOGIN and REVIEWFLOW_PASSWORD are required")


def main() -> int:
    login_response = requests.post(
        f"{base_url}/auth/login",
        json={"identifier": identifier, "password": password},
        timeout=15,
    )
    login_response.raise_for_status()
    headers = {"Authorization": f"Bearer {login_response.json()['access_token']}"}

    settings_response = requests.get(f"{base_url}/business/review-settings", headers=headers, timeout=15)
    settings_response.raise_for_status()

    requests_response = requests.get(
        f"{base_url}/review-requests",
        headers=headers,
        params={"limit": 5, "offset": 0},
        timeout=15,
    )
    requests_response.raise_for_status()

    review_settings = settings_response.json()
    platforms = ", ".join(item["type"] for item in review_settings["platforms"]) or "none"
    print(f"Business: {review_settings['business_name']}")
    print(f"Threshold: {review_settings['public_rating_threshold']} (platforms: {platforms})")
    print(f"Review requests total: {requests_response.json()['pagination']['total']}")
    return 0


if __name__ == "__main__":
    try:
        raise SystemExit(main())
    except requests.RequestException as exc:
        print(f"API probe failed: {exc}", file=sys.stderr)
        raise SystemExit(1)
