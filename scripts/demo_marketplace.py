#!/usr/bin/env python3
"""
Live E2E Demo: a marketplace order protected by a TradeGuard reserve.

Wanjiru: buyer ordering five crates of avocados
Otieno:  seller (the farm co-op)
Kamau:   boda-boda rider delivering the order
Arbiter: TradeGuard staff wallet (optional, for the dispute act)

Showcases:
  1. Wallet registration with Ed25519 keypairs
  2. Dev deposit into the buyer's wallet
  3. Holding funds in a reserve with a seller/driver/fee split
  4. Delivery proof (QR scan + GPS) from the rider
  5. Buyer verification and seller-triggered release
  6. Idempotent retries
  7. A second order disputed and partially refunded by an arbiter

Run:
  1. Start the API:  ENV=development uvicorn tradeguard.main:app --port 8080
  2. Run this demo:  python scripts/demo_marketplace.py [base_url]

The dispute act needs an arbiter wallet. Set ARBITER_PRIVATE_KEY to a hex
Ed25519 key whose public half is listed in the server's ARBITER_PUBLIC_KEYS.
"""

import hashlib
import json
import os
import sys
import time
import uuid
from datetime import UTC, datetime
from decimal import Decimal

import httpx
from nacl.encoding import HexEncoder
from nacl.signing import SigningKey

BASE_URL = sys.argv[1] if len(sys.argv) > 1 else "http://localhost:8080"

# ─── Colors ───

BOLD = "\033[1m"
DIM = "\033[2m"
GREEN = "\033[92m"
BLUE = "\033[94m"
YELLOW = "\033[93m"
RED = "\033[91m"
CYAN = "\033[96m"
MAGENTA = "\033[95m"
RESET = "\033[0m"


def banner(text: str) -> None:
    print(f"\n{'═' * 64}")
    print(f"  {BOLD}{text}{RESET}")
    print(f"{'═' * 64}")


def step(num: int, text: str) -> None:
    print(f"\n{BOLD}{CYAN}Step {num:2d}{RESET} │ {text}")


def party_says(name: str, color: str, msg: str) -> None:
    print(f"         {color}{BOLD}{name}{RESET}: {msg}")


def platform_says(msg: str) -> None:
    print(f"         {MAGENTA}⚙ TradeGuard{RESET}: {msg}")


def show_json(data: dict, keys: list[str] | None = None, indent: int = 9) -> None:
    filtered = {k: data[k] for k in keys if k in data} if keys else data
    prefix = " " * indent
    for line in json.dumps(filtered, indent=2, default=str).split("\n"):
        print(f"{prefix}{DIM}{line}{RESET}")


def fail(msg: str) -> None:
    print(f"\n{RED}{BOLD}✖ FAILED: {msg}{RESET}")
    sys.exit(1)


def expect(resp: httpx.Response, status: int, context: str) -> dict | list:
    if resp.status_code != status:
        fail(f"{context}: expected {status}, got {resp.status_code}: {resp.text}")
    return resp.json()


# ─── Ed25519 Wallet Client ───

class WalletClient:
    """A wallet holder that signs every request with its Ed25519 key."""

    def __init__(self, name: str, color: str, private_hex: str | None = None) -> None:
        self.name = name
        self.color = color
        if private_hex:
            self.signing_key = SigningKey(private_hex.encode(), encoder=HexEncoder)
        else:
            self.signing_key = SigningKey.generate()
        self.public_hex = self.signing_key.verify_key.encode(encoder=HexEncoder).decode()
        self.wallet_id: str | None = None
        self.http = httpx.Client(base_url=BASE_URL, timeout=30.0)

    def _sign(self, method: str, path: str, body: bytes) -> dict[str, str]:
        timestamp = datetime.now(UTC).isoformat()
        body_hash = hashlib.sha256(body).hexdigest()
        message = f"{timestamp}\n{method}\n{path}\n{body_hash}".encode()
        signature = self.signing_key.sign(message, encoder=HexEncoder).signature.decode()
        return {
            "Authorization": f"WalletSig {self.wallet_id}:{signature}",
            "X-Timestamp": timestamp,
            "X-Nonce": hashlib.sha256(f"{time.time()}{uuid.uuid4()}".encode()).hexdigest()[:32],
        }

    def register(self) -> dict:
        data = expect(
            self.http.post("/wallets", json={"public_key": self.public_hex, "display_name": self.name}),
            201, f"{self.name} registration",
        )
        self.wallet_id = data["wallet_id"]
        return data

    def post(self, path: str, data: dict | None = None, headers: dict | None = None) -> httpx.Response:
        body = json.dumps(data).encode() if data is not None else b""
        request_headers = {"Content-Type": "application/json", **self._sign("POST", path, body)}
        if headers:
            request_headers.update(headers)
        return self.http.post(path, content=body, headers=request_headers)

    def get(self, path: str) -> httpx.Response:
        return self.http.get(path, headers=self._sign("GET", path, b""))

    def balance(self) -> dict:
        return expect(self.get(f"/wallets/{self.wallet_id}/balance"), 200, f"{self.name} balance")


def main() -> None:
    banner("TradeGuard: Protected Marketplace Order")

    buyer = WalletClient("Wanjiru", YELLOW)
    seller = WalletClient("Otieno Farm Co-op", BLUE)
    driver = WalletClient("Kamau (rider)", GREEN)

    # ═══════════════════════════════════════════════════════════════
    banner("Act 1: Wallets")
    # ═══════════════════════════════════════════════════════════════

    step(1, "Everyone registers a wallet")
    for party in (buyer, seller, driver):
        data = party.register()
        party_says(party.name, party.color, f"wallet {data['wallet_id']} ({data['currency']})")

    step(2, "Wanjiru tops up her wallet")
    data = expect(
        buyer.post(f"/wallets/{buyer.wallet_id}/deposit", {"amount": "5000.00"}), 200, "Deposit",
    )
    party_says(buyer.name, buyer.color, f"Balance: KES {data['balance']}")

    # ═══════════════════════════════════════════════════════════════
    banner("Act 2: Hold")
    # ═══════════════════════════════════════════════════════════════

    step(3, "Wanjiru pays into a reserve: 5 crates, delivery by boda")
    order = {
        "buyer_wallet_id": buyer.wallet_id,
        "seller_wallet_id": seller.wallet_id,
        "driver_wallet_id": driver.wallet_id,
        "amount": "1200.00",
        "seller_amount": "1000.00",
        "driver_amount": "150.00",
        "platform_fee": "50.00",
        "reference_type": "order",
        "reference_id": f"ORD-{uuid.uuid4().hex[:8].upper()}",
    }
    idem = {"Idempotency-Key": f"checkout-{uuid.uuid4()}"}
    reserve = expect(buyer.post("/reserves", order, idem), 201, "Hold")
    reserve_id = reserve["reserve_id"]
    platform_says(f"KES {reserve['amount']} held until {reserve['auto_release_at']}")
    show_json(reserve, ["reserve_id", "status", "seller_amount", "driver_amount", "platform_fee"])

    step(4, "The checkout screen retries the same request")
    retry = expect(buyer.post("/reserves", order, idem), 201, "Hold retry")
    platform_says(f"Same reserve returned: {retry['reserve_id'] == reserve_id}")
    bal = buyer.balance()
    party_says(buyer.name, buyer.color, f"Available KES {bal['balance']} | In reserve KES {bal['reserve_balance']}")

    # ═══════════════════════════════════════════════════════════════
    banner("Act 3: Delivery")
    # ═══════════════════════════════════════════════════════════════

    step(5, "Kamau scans the buyer's QR code at the gate")
    proof = expect(driver.post(f"/reserves/{reserve_id}/proofs", {
        "proof_type": "qr_scan",
        "proof_data": {"order": order["reference_id"]},
        "qr_code_id": order["reference_id"],
    }), 201, "QR proof")
    party_says(driver.name, driver.color, f"QR proof {proof['proof_id']}")

    step(6, "Kamau attaches the drop-off location")
    expect(driver.post(f"/reserves/{reserve_id}/proofs", {
        "proof_type": "gps_location",
        "proof_data": {"landmark": "Kilimani, blue gate"},
        "gps_coordinates": {"latitude": -1.2921, "longitude": 36.7834},
        "gps_accuracy": 6.0,
    }), 201, "GPS proof")
    reserve = expect(buyer.get(f"/reserves/{reserve_id}"), 200, "Reserve")
    platform_says(f"Proofs on file: {', '.join(reserve['proof_data'])}")

    step(7, "Seller tries to release before the buyer confirms")
    resp = seller.post(f"/reserves/{reserve_id}/release")
    platform_says(f"{resp.status_code}: {resp.json()['detail']}")

    step(8, "Wanjiru confirms the QR scan")
    expect(buyer.post(f"/proofs/{proof['proof_id']}/verify", {"verification_method": "buyer_confirmation"}),
           200, "Verify")
    party_says(buyer.name, buyer.color, "Crates received in good condition")

    step(9, "Seller releases the reserve")
    reserve = expect(seller.post(f"/reserves/{reserve_id}/release", {"reason": "Delivered and confirmed"}),
                     200, "Release")
    platform_says(f"Reserve {reserve['status']} at {reserve['released_at']}")

    # ═══════════════════════════════════════════════════════════════
    banner("Act 4: Settlement")
    # ═══════════════════════════════════════════════════════════════

    step(10, "Balances after release")
    for party in (buyer, seller, driver):
        bal = party.balance()
        party_says(party.name, party.color, f"KES {bal['balance']} (reserve KES {bal['reserve_balance']})")

    step(11, "Audit trail")
    for entry in expect(buyer.get(f"/reserves/{reserve_id}/audit"), 200, "Audit"):
        print(f"           {DIM}{entry['timestamp']}  {entry['action']:<16} KES {entry['amount']}{RESET}")

    # ═══════════════════════════════════════════════════════════════
    banner("Act 5: Dispute")
    # ═══════════════════════════════════════════════════════════════

    arbiter_key = os.environ.get("ARBITER_PRIVATE_KEY")
    if not arbiter_key:
        print(f"\n         {DIM}ARBITER_PRIVATE_KEY not set, skipping the dispute act{RESET}")
        return

    arbiter = WalletClient("TradeGuard Arbiter", MAGENTA, arbiter_key)
    resp = arbiter.http.post("/wallets", json={"public_key": arbiter.public_hex, "display_name": arbiter.name})
    if resp.status_code == 201:
        arbiter.wallet_id = resp.json()["wallet_id"]
    else:
        fail("Arbiter wallet already registered; use a fresh ARBITER_PRIVATE_KEY")

    step(12, "A second order: two crates arrive crushed")
    second = expect(buyer.post("/reserves", {
        **order,
        "driver_wallet_id": None,
        "amount": "1000.00",
        "seller_amount": "950.00",
        "driver_amount": "0.00",
        "reference_id": f"ORD-{uuid.uuid4().hex[:8].upper()}",
    }), 201, "Second hold")
    dispute = expect(buyer.post(f"/reserves/{second['reserve_id']}/disputes", {
        "against_wallet_id": seller.wallet_id,
        "reason": "damaged_goods",
        "description": "Two of five crates crushed on arrival",
        "evidence": [{"type": "photo", "url": "https://example.com/crates.jpg"}],
    }), 201, "Dispute")
    platform_says(f"Dispute {dispute['dispute_id']} opened, reserve frozen")

    step(13, "Arbiter refunds the damaged share")
    data = expect(arbiter.post(f"/disputes/{dispute['dispute_id']}/resolve", {
        "resolution": "partial_refund",
        "resolution_details": "Refund 2 of 5 crates",
        "partial_refund_amount": "380.00",
    }), 200, "Resolve")
    show_json(data["reserve"], ["status", "amount", "seller_amount"])

    before = Decimal("5000.00")
    after = Decimal(buyer.balance()["balance"])
    party_says(buyer.name, buyer.color, f"Spent KES {before - after} across both orders")

    banner("Demo Complete")


if __name__ == "__main__":
    main()
