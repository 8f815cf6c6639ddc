#!/usr/bin/env python3
"""
Smoke test for a running JobAssist Credits API (no credits are spent).
Usage:
  API_BASE=https://jobassist-api.example.com/api/v1 python scripts/smoke_api.py
  python scripts/smoke_api.py  # defaults to http://localhost:8000/api/v1
"""
import os
import sys
import urllib.request
import urllib.error

def main():
    base = os.environ.get("API_BASE", "http://localhost:8000/api/v1").rstrip("/")
    root = base.replace("/api/v1", "").rstrip("/")
    failed = []

    def call(method: str, url_path: str, body: bytes = None, *, use_root: bool = False) -> int:
        path = url_path if url_path.startswith("/") else "/" + url_path
        url = (root.rstrip("/") + path) if use_root else (base.rstrip("/") + path)
        headers = {"Content-Type": "application/json"} if body is not None else {}
        req = urllib.request.Request(url, data=body, method=method, headers=headers)
        try:
            with urllib.request.urlopen(req, timeout=10) as r:
                return r.status
        except urllib.error.HTTPError as e:
            return e.code
        except Exception as e:
            print(f"  ERROR: {e}")
            return 0

    def check(label: str, status: int, expected, *, required: bool = True) -> None:
        print(f"  {label} ...", end=" ")
        if status in expected:
            print(f"OK ({status})")
        elif required:
            print(f"FAIL ({status})")
            failed.append(label)
        else:
            print(f"WARN ({status})")

    print(f"Smoke testing API at {base}")

    check("GET /health", call("GET", "/health", use_root=True), (200,), required=False)
    check("GET /credits/features", call("GET", "/credits/features"), (200,))
    check("OPTIONS /credits/resume-pdf", call("OPTIONS", "/credits/resume-pdf"), (204, 200))
    check("GET /credits/resume-pdf (wrong method)", call("GET", "/credits/resume-pdf"), (405,))
    # 401 when a service key is configured, 400 otherwise
    check("POST /credits/job-analysis (empty body)", call("POST", "/credits/job-analysis", b"{}"), (400, 401))
    check("POST /webhooks/relay (unknown type)", call("POST", "/webhooks/relay", b'{"webhook_type":"smoke"}'), (400,))
    check("GET /credits/me (no auth)", call("GET", "/credits/me"), (401,))

    if failed:
        print(f"Failed: {failed}")
        sys.exit(1)
    print("All smoke checks passed.")
    sys.exit(0)

if __name__ == "__main__":
    main()
