import os

from fastapi.testclient import TestClient

from text_humanizer.api.main import app, ledger
from text_humanizer.config import settings

SAMPLE_TEXT = (
    "The utilization of artificial intelligence in contemporary society has witnessed a substantial "
    "proliferation across diverse sectors. This technological advancement has facilitated enhanced "
    "efficiency and productivity in numerous domains. Organizations are increasingly implementing "
    "AI-driven solutions to optimize their operational processes and decision-making frameworks."
)


def _balance(client: TestClient, user_id: str) -> int:
    return client.get(f"/v1/credits/{user_id}").json()["data"]["balance"]["credits_remaining"]


def main() -> int:
    if not settings.humanizer_api_key:
        print("[FAIL] HUMANIZER_API_KEY is empty. Put it into .env and retry.")
        return 2

    user_id = os.getenv("SMOKE_USER_ID", "smoke-user")
    ledger.grant(user_id, len(SAMPLE_TEXT) * 2, note="smoke test credits")

    client = TestClient(app)
    before = _balance(client, user_id)
    r = client.post("/v1/humanize", json={"user_id": user_id, "text": SAMPLE_TEXT, "title": "Smoke"})
    if r.status_code != 200:
        print(f"[FAIL] humanize: {r.status_code} {r.text}")
        return 1

    data = r.json()["data"]
    doc_id = data["document"]["id"]
    print(
        f"[OK] humanize doc={doc_id} ud_id={data['job']['external_id']} "
        f"attempts={data['job']['attempts']} charged={before - _balance(client, user_id)}"
    )

    rr = client.post(f"/v1/documents/{doc_id}/rehumanize", params={"user_id": user_id})
    if rr.status_code != 200:
        print(f"[FAIL] rehumanize: {rr.status_code} {rr.text}")
        return 1
    print(f"[OK] rehumanize ud_id={rr.json()['data']['job']['external_id']}")

    print(f"[DONE] balance {before} -> {_balance(client, user_id)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
