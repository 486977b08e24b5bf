import asyncio
import sys
import os

# Add backend root to path
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from dlmm_tracker.core.logging import setup_logging
from dlmm_tracker.services.balance_delta import balance_analyzer
from dlmm_tracker.services.classifier import transaction_classifier
from dlmm_tracker.services.solana_rpc import solana_client


async def inspect_transaction(signature: str, wallet: str):
    print(f"Fetching {signature}...")
    record = await solana_client.get_transaction(signature)
    if record is None:
        print("Transaction not found")
        return

    print(f"DLMM transaction: {transaction_classifier.is_dlmm_transaction(record)}")
    print(f"Success: {record.success}  Block time: {record.block_time}")
    print("Logs:")
    for line in record.log_messages:
        print(f"  {line}")

    print("Accounts:")
    for i, key in enumerate(record.account_keys):
        flags = ("S" if key.signer else "-") + ("W" if key.writable else "-")
        print(f"  [{i}] {flags} {key.address}")

    print(f"Token entries: pre={len(record.pre_token_balances)} post={len(record.post_token_balances)}")
    for change in balance_analyzer.token_changes(record):
        print(f"  {change.mint}: {change.delta:+.6f} (account {change.account_index})")

    classified = transaction_classifier.classify(record, wallet)
    print("-" * 20)
    print(f"Kind: {classified.kind.value}")
    print(f"Position: {classified.position_id}")
    print(f"Pool: {classified.pool_id}")
    print(f"SOL delta: {classified.native_delta:+.9f}")


if __name__ == "__main__":
    if len(sys.argv) < 3:
        print("usage: python debug_classify_tx.py <signature> <wallet>")
        sys.exit(1)
    setup_logging("DEBUG")
    asyncio.run(inspect_transaction(sys.argv[1], sys.argv[2]))
