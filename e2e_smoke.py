#!/usr/bin/env python3
"""
E2E smoke run - Paygate v1.0.0
Hits a running server. Paid-path checks need PAYGATE_SMOKE_TX: a base64
signed SPL transfer to the configured recipient on the configured network.

    python e2e_smoke.py [base_url]
"""
import json, os, sys, time
from datetime import datetime

import requests

BASE = sys.argv[1] if len(sys.argv) > 1 else os.environ.get("PAYGATE_URL", "http://localhost:8787")
SMOKE_TX = os.environ.get("PAYGATE_SMOKE_TX")

R = {"passed": 0, "failed": 0, "errors": [], "timing": {}}

def T(name, func):
    s = time.time()
    try:
        func()
        e = time.time() - s
        R["passed"] += 1; R["timing"][name] = e
        print(f"  ✅ PASS {name} ({e:.2f}s)")
    except Exception as ex:
        e = time.time() - s
        R["failed"] += 1; R["errors"].append(f"{name}: {ex}"); R["timing"][name] = e
        print(f"  ❌ FAIL {name}: {ex} ({e:.2f}s)")

def AEQ(a, b, m=""):
    if a != b: raise AssertionError(f"Expected {b!r}, got {a!r}. {m}")
def AIN(item, cont, m=""):
    if item not in cont: raise AssertionError(f"'{item}' not found. {m}")
def ACODE(r, c, m=""):
    if r.status_code != c: raise AssertionError(f"HTTP {r.status_code} != {c}. Body: {r.text[:200]}. {m}")

def x_payment(tx, network):
    return json.dumps({"x402Version": 1, "scheme": "exact", "network": network,
                       "payload": {"serializedTransaction": tx}})

print(f"\n{'#'*60}")
print(f"# PAYGATE SMOKE | {datetime.now().isoformat()} | {BASE}")
print(f"{'#'*60}")

# ==================== SECTION 1: BASIC ====================
print(f"\n{'='*50}\n SECTION 1: BASIC ENDPOINTS\n{'='*50}")

T("GET /health", lambda: (
    (r := requests.get(f"{BASE}/health")),
    ACODE(r, 200),
    (d := r.json()),
    AEQ(d["status"], "ok"),
    AIN("network", d),
)[-1])

T("GET / - root info", lambda: (
    (r := requests.get(f"{BASE}/")),
    ACODE(r, 200),
    AIN("POST /payment/verify", r.json()["endpoints"]),
)[-1])

T("GET /payment/requirements", lambda: (
    (r := requests.get(f"{BASE}/payment/requirements")),
    ACODE(r, 200),
    (d := r.json()),
    AIN("recipient", d), AIN("amount", d), AIN("token", d),
)[-1])

# ==================== SECTION 2: REJECTIONS ====================
print(f"\n{'='*50}\n SECTION 2: REJECTIONS\n{'='*50}")

T("POST /payment/verify - empty body (400)", lambda: ACODE(
    requests.post(f"{BASE}/payment/verify", json={}), 400))

T("POST /payment/verify - garbage tx (400)", lambda: (
    (r := requests.post(f"{BASE}/payment/verify", json={"serializedTransaction": "bm9wZQ=="})),
    ACODE(r, 400),
    AEQ(r.json()["failure_reason"], "MalformedTransaction"),
)[-1])

T("GET /payment/<unknown> (404)", lambda: ACODE(
    requests.get(f"{BASE}/payment/1111111111111111111111111111111111111111111111111111111111111111"), 404))

T("GET /payments - missing requester (400)", lambda: ACODE(
    requests.get(f"{BASE}/payments"), 400))

T("GET /api/premium/ping - 200 or 402", lambda: AIN(
    requests.get(f"{BASE}/api/premium/ping").status_code, [200, 402]))

T("GET /api/premium/ping - bad X-PAYMENT (400 when paywalled)", lambda: AIN(
    requests.get(f"{BASE}/api/premium/ping", headers={"X-PAYMENT": "{oops"}).status_code, [200, 400]))

# ==================== SECTION 3: PAID PATH ====================
if SMOKE_TX:
    print(f"\n{'='*50}\n SECTION 3: PAID PATH\n{'='*50}")
    network = requests.get(f"{BASE}/payment/requirements").json()["network"]

    T("POST /payment/verify - real payment", lambda: (
        (r := requests.post(f"{BASE}/payment/verify",
                            json={"serializedTransaction": SMOKE_TX, "requesterId": "smoke"}, timeout=120)),
        ACODE(r, 200),
        AEQ(r.json()["payment"]["status"], "confirmed"),
    )[-1])

    T("POST /payment/verify - replay is idempotent", lambda: (
        (r := requests.post(f"{BASE}/payment/verify", json={"serializedTransaction": SMOKE_TX})),
        ACODE(r, 200),
        AEQ(r.json().get("replayed"), True),
    )[-1])

    T("GET /api/premium/ping - with X-PAYMENT", lambda: ACODE(
        requests.get(f"{BASE}/api/premium/ping", headers={"X-PAYMENT": x_payment(SMOKE_TX, network)}), 200))

    T("GET /payments?requester=smoke", lambda: (
        (r := requests.get(f"{BASE}/payments", params={"requester": "smoke"})),
        ACODE(r, 200),
        AEQ(r.json()["total"] >= 1, True),
    )[-1])
else:
    print("\n  (PAYGATE_SMOKE_TX not set - skipping paid path)")

# ==================== RESULTS ====================
print(f"\n{'='*60}")
print(f" RESULTS")
print(f"{'='*60}")
print(f"  Total: {R['passed']+R['failed']} | ✅ {R['passed']} | ❌ {R['failed']}")

if R["errors"]:
    print(f"\n  FAILURES:")
    for e in R["errors"]: print(f"    ❌ {e}")

print(f"\n  SLOWEST:")
for name, t in sorted(R["timing"].items(), key=lambda x: x[1], reverse=True)[:5]:
    m = "🔴" if t > 10 else "🟡" if t > 3 else "🟢"
    print(f"    {m} {t:.2f}s - {name}")

sys.exit(1 if R["failed"] > 0 else 0)
