"""Reconciliation logic for comparing the local and remote ledgers."""

import logging
from typing import Dict, Iterable, List, Set, Tuple

from .models import (
    DiffResult,
    MismatchedRecord,
    TransactionRecord,
)

logger = logging.getLogger(__name__)


class ReconciliationMatcher:
    """Partition remote transactions into missing, mismatched and matched.

    The remote ledger is authoritative for existence: a transaction that only
    exists locally is never reported.
    """

    # Fields compared between the two copies of a transaction
    COMPARED_FIELDS: Tuple[str, ...] = ("status", "settlement_batch_id")

    def _differing_fields(
        self,
        local: TransactionRecord,
        remote: TransactionRecord,
    ) -> List[str]:
        """Return the names of the compared fields whose values differ.

        Args:
            local: Local ledger copy.
            remote: Remote ledger copy.

        Returns:
            Field names, in ``COMPARED_FIELDS`` order.
        """
        return [
            name for name in self.COMPARED_FIELDS
            if getattr(local, name) != getattr(remote, name)
        ]

    def diff(
        self,
        local_transactions: Iterable[TransactionRecord],
        remote_transactions: Iterable[TransactionRecord],
    ) -> DiffResult:
        """Compare the local ledger against the remote one.

        The process:
        1. Build a lookup of local records keyed by transaction ID
        2. Classify every remote record as missing, mismatched or matched
        3. Ignore local records that the remote ledger does not know about

        Args:
            local_transactions: Records from the local ledger.
            remote_transactions: Records from the remote ledger.

        Returns:
            DiffResult with the three groups in remote order.
        """
        local_by_id: Dict[str, TransactionRecord] = {}
        for record in local_transactions:
            local_by_id.setdefault(record.transaction_id, record)

        result = DiffResult()
        seen: Set[str] = set()
        remote_count = 0

        for remote in remote_transactions:
            remote_count += 1
            transaction_id = remote.transaction_id
            if transaction_id in seen:
                continue
            seen.add(transaction_id)

            local = local_by_id.get(transaction_id)
            if local is None:
                result.missing.append(remote)
                continue

            fields = self._differing_fields(local, remote)
            if fields:
                result.mismatched.append(MismatchedRecord(
                    transaction_id=transaction_id,
                    local=local,
                    remote=remote,
                    fields=fields,
                ))
            else:
                result.matched.append(transaction_id)

        logger.info(
            f"Diff complete over {len(local_by_id)} local, {remote_count} remote: "
            f"{len(result.missing)} missing, {len(result.mismatched)} mismatched, "
            f"{len(result.matched)} matched"
        )
        return result


def diff(
    local_transactions: Iterable[TransactionRecord],
    remote_transactions: Iterable[TransactionRecord],
) -> DiffResult:
    """Module-level shortcut for ``ReconciliationMatcher().diff``."""
    return ReconciliationMatcher().diff(local_transactions, remote_transactions)
