from text_humanizer.db import init_db
from text_humanizer.ledger import CreditLedger


def main() -> int:
    init_db()
    drifted = CreditLedger().list_drifted_users()
    for row in drifted:
        print(
            f"{row['user_id']}: balance={row['credits_remaining']} "
            f"ledger={row['ledger_total']} drift={row['drift']}"
        )

    print(f"Users with credit drift: {len(drifted)}")
    return 1 if drifted else 0


if __name__ == "__main__":
    raise SystemExit(main())
