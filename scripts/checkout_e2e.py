#!/usr/bin/env python3
"""
Checkout service end-to-end checks against a running instance.

Run:
  python scripts/checkout_e2e.py

Optional env:
  CHECKOUT_BASE=http://localhost:8000
  GATEWAY_KEY_SECRET=...      same secret the service runs with; used to sign callbacks
  LIVE_GATEWAY=1              also create a real gateway order through the service
  DEBUG=1
"""

from __future__ import annotations

import hashlib
import hmac
import os
import sys
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests


# =========================
# Simple CLI UI (ANSI)
# =========================

class Style:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    GRAY = "\033[90m"

    BOX_LINE = "─"
    BOX_VERT = "│"
    BOX_TL = "┌"
    BOX_TR = "┐"
    BOX_BL = "└"
    BOX_BR = "┘"


def _boxed(text: str, color: str):
    line = Style.BOX_LINE * (len(text) + 2)
    print(f"{color}{Style.BOX_TL}{line}{Style.BOX_TR}{Style.RESET}")
    print(f"{color}{Style.BOX_VERT} {Style.BOLD}{text}{Style.RESET}{color} {Style.BOX_VERT}{Style.RESET}")
    print(f"{color}{Style.BOX_BL}{line}{Style.BOX_BR}{Style.RESET}")


def banner():
    print()
    _boxed("Checkout Service - E2E Checks", Style.CYAN)
    print()


def section_title(text: str):
    print()
    _boxed(text, Style.BLUE)


def info(msg: str):
    print(f"{Style.CYAN}ℹ {msg}{Style.RESET}")


def warn(msg: str):
    print(f"{Style.YELLOW}⚠ {msg}{Style.RESET}")


def ok(msg: str):
    print(f"{Style.GREEN}✔ {msg}{Style.RESET}")


def fail(msg: str):
    print(f"{Style.RED}✘ {msg}{Style.RESET}")


# =========================
# Config
# =========================

CHECKOUT_BASE = os.getenv("CHECKOUT_BASE", "http://localhost:8000").rstrip("/")
GATEWAY_SECRET = os.getenv("GATEWAY_KEY_SECRET", "")
LIVE_GATEWAY = os.getenv("LIVE_GATEWAY", "0").strip().lower() in {"1", "true", "yes"}
DEBUG = os.getenv("DEBUG", "0").strip().lower() in {"1", "true", "yes"}

RUN_ID = uuid.uuid4().hex[:8]

ADDRESS = {
    "name": "E2E Shopper",
    "phone": "9800000000",
    "email": "e2e@example.com",
    "addressLine1": "1 Test Street",
    "city": "Bengaluru",
    "state": "KA",
    "pincode": "560001",
}

ITEMS = [{"productId": "p-kibble", "name": "Kibble 2kg", "price": 500, "quantity": 2}]
EXPECTED = {"subtotal": 1000, "shipping": 5000, "total": 6000}


def debug(msg: str):
    if DEBUG:
        print(f"{Style.GRAY}… {msg}{Style.RESET}")


# =========================
# Models
# =========================

@dataclass
class CheckResult:
    name: str
    success: bool
    details: str = ""
    scenario: str = ""


# =========================
# HTTP helpers
# =========================

def http(method: str, path: str, **kwargs) -> requests.Response:
    kwargs.setdefault("timeout", 15)
    url = CHECKOUT_BASE + path
    debug(f"{method} {url} {kwargs.get('json') or kwargs.get('params') or ''}")
    return requests.request(method, url, **kwargs)


def wait_for_health(timeout: int = 30) -> bool:
    start = time.time()
    while time.time() - start < timeout:
        try:
            if http("GET", "/orders/health").status_code == 200:
                ok("checkout service is healthy.")
                return True
        except requests.RequestException as e:
            debug(f"not ready: {e}")
        time.sleep(1)
    fail(f"checkout service did not become healthy in {timeout} seconds.")
    return False


def sign(gateway_order_id: str, payment_id: str) -> str:
    message = f"{gateway_order_id}|{payment_id}".encode()
    return hmac.new(GATEWAY_SECRET.encode(), message, hashlib.sha256).hexdigest()


def check(results: List[CheckResult], scenario: str, name: str, success: bool, details: str = "") -> bool:
    (ok if success else fail)(f"{name}{': ' + details if details else ''}")
    results.append(CheckResult(name, success, details, scenario))
    return success


def expect_status(results, scenario, name, resp: requests.Response, expected: int) -> Optional[Dict[str, Any]]:
    success = resp.status_code == expected
    details = f"HTTP {resp.status_code}" + ("" if success else f", body={resp.text[:300]}")
    check(results, scenario, name, success, details)
    try:
        return resp.json()
    except ValueError:
        return None


# =========================
# Scenarios
# =========================

def scenario_address_book() -> List[CheckResult]:
    scenario = "Scenario 1 - Address Book Default"
    section_title(scenario)
    results: List[CheckResult] = []
    user = f"e2e-addr-{RUN_ID}"

    a = expect_status(results, scenario, "Add first address", http("POST", "/user/addresses", json={**ADDRESS, "userId": user}), 200)
    if not a:
        return results
    check(results, scenario, "First address is default", a.get("isDefault") is True)

    b = expect_status(
        results,
        scenario,
        "Add second address as default",
        http("POST", "/user/addresses", json={**ADDRESS, "userId": user, "addressType": "work", "isDefault": True}),
        200,
    )
    if not b:
        return results

    listed = http("GET", "/user/addresses", params={"userId": user}).json()
    defaults = [x["addressId"] for x in listed if x["isDefault"]]
    check(results, scenario, "Default moved to second address", defaults == [b["addressId"]], f"defaults={defaults}")

    resp = http("DELETE", "/user/addresses", json={"userId": user, "addressId": b["addressId"]})
    body = expect_status(results, scenario, "Delete default address", resp, 200) or {}
    check(
        results,
        scenario,
        "Earliest remaining address promoted",
        body.get("promotedAddressId") == a["addressId"],
        f"promoted={body.get('promotedAddressId')}",
    )
    return results


def scenario_cash_on_delivery() -> List[CheckResult]:
    scenario = "Scenario 2 - Cash on Delivery"
    section_title(scenario)
    results: List[CheckResult] = []
    user = f"e2e-cod-{RUN_ID}"

    payload = {
        "userId": user,
        "items": ITEMS,
        "deliveryAddress": ADDRESS,
        "paymentMethod": "cod",
        "idempotencyKey": f"cod-{RUN_ID}",
        **EXPECTED,
    }
    created = expect_status(results, scenario, "Create COD order", http("POST", "/orders/create", json=payload), 201)
    if not created:
        return results
    order = created["order"]
    check(results, scenario, "Order confirmed", order["status"] == "confirmed", f"status={order['status']}")
    check(
        results,
        scenario,
        "Totals computed server-side",
        all(order[k] == v for k, v in EXPECTED.items()),
        f"subtotal={order['subtotal']} shipping={order['shipping']} total={order['total']}",
    )

    replay = expect_status(results, scenario, "Repeat with same idempotency key", http("POST", "/orders/create", json=payload), 200)
    if replay:
        check(results, scenario, "Replay returns the same order", replay["orderId"] == created["orderId"])

    listed = http("GET", f"/orders/user/{user}").json()
    check(results, scenario, "User has exactly one order", len(listed) == 1, f"count={len(listed)}")

    bad = {**payload, "idempotencyKey": None, "total": 1}
    expect_status(results, scenario, "Mismatched total rejected", http("POST", "/orders/create", json=bad), 400)
    return results


def scenario_gateway_settlement() -> List[CheckResult]:
    scenario = "Scenario 3 - Gateway Settlement"
    section_title(scenario)
    results: List[CheckResult] = []
    user = f"e2e-pay-{RUN_ID}"

    if not GATEWAY_SECRET:
        warn("GATEWAY_KEY_SECRET not set; skipping signed callback checks.")
        results.append(CheckResult("Gateway settlement skipped", False, "GATEWAY_KEY_SECRET not set", scenario))
        return results

    # The storefront created this gateway order itself; the service adopts the id.
    gateway_order_id = f"order_e2e{RUN_ID}"
    payload = {
        "userId": user,
        "items": ITEMS,
        "deliveryAddress": ADDRESS,
        "paymentMethod": "gateway",
        "gatewayOrderId": gateway_order_id,
    }
    created = expect_status(results, scenario, "Create pending gateway order", http("POST", "/orders/create", json=payload), 201)
    if not created:
        return results
    check(results, scenario, "Order pending", created["order"]["status"] == "pending")

    tampered = {"orderId": gateway_order_id, "paymentId": "pay_e2e", "signature": sign(gateway_order_id, "pay_other")}
    expect_status(results, scenario, "Bad signature rejected", http("POST", "/orders/finalize-payment", json=tampered), 400)

    callback = {"orderId": gateway_order_id, "paymentId": "pay_e2e", "signature": sign(gateway_order_id, "pay_e2e")}
    settled = expect_status(results, scenario, "Finalize payment", http("POST", "/orders/finalize-payment", json=callback), 200)
    if settled:
        order = settled["order"]
        check(
            results,
            scenario,
            "Order confirmed and paid",
            order["status"] == "confirmed" and order["paymentStatus"] == "completed",
            f"status={order['status']} paymentStatus={order['paymentStatus']}",
        )

    again = expect_status(results, scenario, "Duplicate callback accepted", http("POST", "/orders/finalize-payment", json=callback), 200)
    if again and settled:
        check(results, scenario, "Duplicate returns the same order", again == settled)

    other = {"orderId": gateway_order_id, "paymentId": "pay_e2e_2", "signature": sign(gateway_order_id, "pay_e2e_2")}
    expect_status(results, scenario, "Second payment conflicts", http("POST", "/orders/finalize-payment", json=other), 409)
    return results


def scenario_live_gateway() -> List[CheckResult]:
    scenario = "Scenario 4 - Live Gateway Intent"
    section_title(scenario)
    results: List[CheckResult] = []

    payload = {
        "userId": f"e2e-live-{RUN_ID}",
        "items": ITEMS,
        "deliveryAddress": ADDRESS,
        "paymentMethod": "gateway",
    }
    created = expect_status(results, scenario, "Create order with gateway intent", http("POST", "/orders/create", json=payload), 201)
    if created:
        intent = created.get("gatewayIntent") or {}
        check(
            results,
            scenario,
            "Intent amount matches order total",
            intent.get("amountMinorUnits") == created["order"]["total"],
            f"gatewayOrderId={intent.get('gatewayOrderId')}",
        )
    return results


# =========================
# Summary
# =========================

def print_results(results: List[CheckResult]) -> int:
    print(f"\n{Style.BOLD}================ RESULTS ================{Style.RESET}")
    per_scenario: Dict[str, Dict[str, int]] = {}
    for r in results:
        icon = "✅" if r.success else "❌"
        color = Style.GREEN if r.success else Style.RED
        print(f"{color}{icon} {r.name}{Style.RESET}")
        if r.details:
            print(f"    {Style.DIM}{r.details}{Style.RESET}")
        agg = per_scenario.setdefault(r.scenario, {"total": 0, "passed": 0})
        agg["total"] += 1
        agg["passed"] += int(r.success)

    passed = sum(1 for r in results if r.success)
    failed = len(results) - passed
    print(f"{Style.BOLD}========================================={Style.RESET}")
    print(f"Total: {len(results)}  |  Passed: {Style.GREEN}{passed}{Style.RESET}  |  Failed: {Style.RED}{failed}{Style.RESET}")

    print(f"\n{Style.BOLD}Scenario breakdown:{Style.RESET}")
    for scen, agg in per_scenario.items():
        color = Style.GREEN if agg["passed"] == agg["total"] else Style.RED
        print(f"  {color}- {scen}: {agg['passed']}/{agg['total']} passed{Style.RESET}")

    if failed:
        print(f"\n{Style.YELLOW}{Style.BOLD}Troubleshooting hints:{Style.RESET}")
        print(f"{Style.YELLOW}- Signature failures: the service and this script must share GATEWAY_KEY_SECRET.{Style.RESET}")
        print(f"{Style.YELLOW}- 502 responses: the gateway could not be reached; check GATEWAY_BASE_URL and keys.{Style.RESET}")
        print()
    return failed


def main():
    banner()
    info(f"Target: {CHECKOUT_BASE} (run {RUN_ID})")
    if not wait_for_health():
        sys.exit(1)

    all_results: List[CheckResult] = []
    all_results.extend(scenario_address_book())
    all_results.extend(scenario_cash_on_delivery())
    all_results.extend(scenario_gateway_settlement())
    if LIVE_GATEWAY:
        all_results.extend(scenario_live_gateway())

    sys.exit(1 if print_results(all_results) else 0)


if __name__ == "__main__":
    main()
