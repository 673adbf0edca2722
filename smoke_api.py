#!/usr/bin/env python3
"""
Smoke test for the credits API: spends a fresh session's free credits, then
tops a user session up with a coupon and checks the coupon cannot be reused.
Run against a live server (with a database) with: python smoke_api.py [BASE_URL]
Default BASE_URL: http://localhost:3000
"""
import json
import sys
import urllib.error
import urllib.request
import uuid

BASE_URL = "http://localhost:3000"
FREE_CREDITS = 7


class CreditsApi:
    """Minimal JSON client; every call returns (status, body) and never raises on HTTP errors."""

    def __init__(self, base_url: str, timeout: float = 120):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def get(self, path: str) -> tuple[int, dict]:
        return self._call("GET", path)

    def post(self, path: str, body: dict) -> tuple[int, dict]:
        return self._call("POST", path, json.dumps(body).encode("utf-8"))

    def _call(self, method: str, path: str, data: bytes = None) -> tuple[int, dict]:
        req = urllib.request.Request(
            self.base_url + path,
            data=data,
            method=method,
            headers={"Content-Type": "application/json"},
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                return resp.status, self._decode(resp.read())
        except urllib.error.HTTPError as e:
            return e.code, self._decode(e.read())
        except urllib.error.URLError as e:
            sys.exit(f"Cannot reach {self.base_url}: {e.reason}")

    @staticmethod
    def _decode(raw: bytes) -> dict:
        text = raw.decode()
        if not text:
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return {"detail": text}


def check(ok: bool, label: str, data) -> None:
    if not ok:
        print(f"   FAIL {label}: {data}")
        sys.exit(1)
    print(f"   OK {label}")


def main():
    api = CreditsApi(sys.argv[1] if len(sys.argv) > 1 else BASE_URL)
    print(f"Testing credits API at {api.base_url}\n")

    # --- Health ---
    print("0. Health check")
    status, data = api.get("/health")
    check(status == 200, "health", data)

    # --- Free credits ---
    session_id = f"smoke-{uuid.uuid4().hex[:8]}"
    print(f"\n1. Spending free credits for {session_id}")
    status, data = api.get(f"/get-credits/{session_id}")
    check(status == 200 and data.get("credits") == FREE_CREDITS, "initial balance", data)

    prompt = {"prompt": "What causes a fever?", "sessionId": session_id}
    for expected in range(FREE_CREDITS - 1, -1, -1):
        status, data = api.post("/generate-content", prompt)
        check(status == 200 and data.get("creditsLeft") == expected, f"generation -> {expected} left", data)
        preview = (data.get("generatedText") or "")[:80].replace("\n", " ")
        print(f"      answer: {preview}...")

    status, data = api.post("/generate-content", prompt)
    check(status == 403, "out of credits", data)

    # --- Coupons ---
    user_session = f"user-{uuid.uuid4().hex[:8]}"
    print(f"\n2. Coupon top-up for {user_session}")
    status, data = api.post("/api/admin/generate-coupon", {"credits": 10, "planTitle": "Monthly"})
    check(status == 201 and not data["coupon"]["isUsed"], "coupon generated", data)
    code = data["coupon"]["code"]

    redeem = {"couponCode": code, "sessionId": user_session, "planTitle": "Monthly"}
    status, data = api.post("/api/coupons/redeem", redeem)
    check(status == 200 and data.get("newTotalCredits") == 10, "coupon redeemed", data)

    status, data = api.post("/api/coupons/redeem", redeem)
    check(status == 404, "coupon reuse rejected", data)

    print("\n" + "=" * 50)
    print("All checks passed.")


if __name__ == "__main__":
    main()
