"""
Local walkthrough: stealth x402 payment with an encrypted audit trail.

Runs the gateway in-process against a facilitator stub that approves
everything, pays for a resource from a throwaway identity, then reads the
owner's ledger back: masked first, decrypted after signing an attestation.
"""

import base64
import json
import tempfile
import threading
import time
from pathlib import Path

import httpx
import uvicorn
from eth_account import Account
from eth_account.messages import encode_defunct

from shroud.encryption import LocalEncryptionProvider, attestation_message
from shroud.facilitator import FacilitatorClient
from shroud.gateway import PaymentGateway
from shroud.ledger import ActivityLedger, FileLedgerStore
from shroud.protocol import HEADER_NAME, REQUIRED_HEADER, RESPONSE_HEADER, decode_challenge
from shroud.server import OWNER_HEADER, create_app
from shroud.stealth import EphemeralIdentity, build_signed_payment, encode_stealth_header

PAY_TO = "0x273326453960864FbA4D2F6Cf09D65fA13E45297"
USDC_BASE_SEPOLIA = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
BASE_URL = "http://127.0.0.1:8403"


def approving_facilitator(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/verify":
        return httpx.Response(200, json={"valid": True})
    return httpx.Response(200, json={"settled": True, "txSignature": f"demo-{int(time.time())}"})


def main():
    print("🛡️  Shroud demo: stealth payment + encrypted audit")
    print("=" * 52)
    print()

    workdir = Path(tempfile.mkdtemp(prefix="shroud-demo-"))
    ledger = ActivityLedger(
        LocalEncryptionProvider(key_path=workdir / "ledger.key"),
        store=FileLedgerStore(workdir / "ledger"),
    )
    facilitator = FacilitatorClient(
        "https://facilitator.local",
        http=httpx.Client(transport=httpx.MockTransport(approving_facilitator)),
    )
    gateway = PaymentGateway(PAY_TO, "eip155:84532", USDC_BASE_SEPOLIA, facilitator, ledger=ledger)

    # 1. Start server
    print("1️⃣  Starting gateway...")
    app = create_app(gateway)
    thread = threading.Thread(
        target=uvicorn.run,
        args=(app,),
        kwargs={"host": "127.0.0.1", "port": 8403, "log_level": "error"},
        daemon=True,
    )
    thread.start()
    time.sleep(2)
    print(f"   ✅ Gateway running on {BASE_URL}")
    print()

    owner = Account.create()
    http = httpx.Client(timeout=30)

    # 2. Unpaid request
    print("2️⃣  Requesting /ai/completion without payment...")
    resp = http.get(f"{BASE_URL}/ai/completion")
    print(f"   Status: {resp.status_code}")
    print(f"   WWW-Authenticate: {resp.headers.get('WWW-Authenticate')}")
    challenge = decode_challenge(resp.headers[REQUIRED_HEADER])
    print(f"   Challenge: {challenge.max_amount_required} USDC to {challenge.pay_to[:10]}...")
    print()

    # 3. Pay from an ephemeral identity
    print("3️⃣  Signing with a single-use identity...")
    identity = EphemeralIdentity.generate()
    signed = build_signed_payment(identity, challenge)
    print(f"   Ephemeral payer: {identity.address}")
    resp = http.post(
        f"{BASE_URL}/ai/completion",
        json={"prompt": "hello"},
        headers={HEADER_NAME: encode_stealth_header(signed), OWNER_HEADER: owner.address},
    )
    receipt = json.loads(base64.b64decode(resp.headers[RESPONSE_HEADER]))
    print(f"   Status: {resp.status_code}")
    print(f"   TX: {receipt['txSignature']}")
    print()

    # 4. Masked audit
    print("4️⃣  Owner's ledger, as anyone sees it...")
    audit = http.get(f"{BASE_URL}/audit/{owner.address}").json()
    for entry in audit["entries"]:
        print(f"   🔒 {entry['kind']} {entry.get('resource', '')} handle={entry['handle'][:24]}...")
    print()

    # 5. Attested decrypt
    print("5️⃣  Decrypting with the owner's signature...")
    attestation = owner.sign_message(encode_defunct(text=attestation_message(owner.address)))
    signature = "0x" + bytes(attestation.signature).hex().removeprefix("0x")
    decrypted = http.post(f"{BASE_URL}/audit/{owner.address}/decrypt", json={"signature": signature}).json()
    for entry in decrypted["entries"]:
        print(f"   🔓 {entry['kind']}: {entry.get('amount_usdc', '?')} USDC")
    print()

    ledger.close()
    print(f"✅ Done. Ledger files in {workdir}")


if __name__ == "__main__":
    main()
