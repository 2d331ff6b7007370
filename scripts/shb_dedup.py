"""
Reconcile freshly fetched transactions with the ones already in the ledger.

Pending ("Prel ...") rows are replaced by their booked counterpart once the
bank settles them; everything else that is already known is skipped.
"""

from shb_models import DeduplicationOutcome, ReconciliationError, Transaction, strip_preliminary


def payees_similar(a: str, b: str) -> bool:
    """Names match when one contains the other once the pending marker is gone.

    The bank truncates long payee names, so equality is too strict.
    """
    if not a or not b:
        return False
    left = strip_preliminary(a)
    right = strip_preliminary(b)
    return left in right or right in left


def transactions_match(a: Transaction, b: Transaction) -> bool:
    return a.date == b.date and abs(a.amount - b.amount) < 1 and payees_similar(a.payee_name, b.payee_name)


def find_match(tx: Transaction, existing: list[Transaction]) -> Transaction | None:
    for candidate in existing:
        if transactions_match(tx, candidate):
            return candidate
    return None


def _judge(tx, existing):
    if not isinstance(tx, Transaction):
        raise ReconciliationError(f"Not a transaction: {tx!r}")
    try:
        match = find_match(tx, existing)
    except (AttributeError, TypeError) as e:
        raise ReconciliationError(f"Could not compare {tx.imported_id or tx.payee_name}: {e}") from e

    if match is None:
        return "include"
    if not tx.is_preliminary and match.is_preliminary:
        return "replace"
    return "skip"


def reconcile(fetched: list[Transaction], existing: list[Transaction]) -> DeduplicationOutcome:
    to_import = []
    replaced = 0
    skipped = 0
    errors = []

    for tx in fetched:
        try:
            action = _judge(tx, existing)
        except ReconciliationError as e:
            print(f"[dedup] ERROR: {e.reason}", flush=True)
            errors.append(e.reason)
            continue

        if action == "include":
            to_import.append(tx)
        elif action == "replace":
            to_import.append(tx)
            replaced += 1
        else:
            skipped += 1

    print(f"[dedup] {len(fetched)} fetched, {len(to_import)} to import "
          f"({replaced} replacing preliminary), {skipped} skipped, {len(errors)} errors", flush=True)
    return DeduplicationOutcome(
        transactions_to_import=tuple(to_import),
        replaced_count=replaced,
        skipped_count=skipped,
        errors=tuple(errors),
    )
