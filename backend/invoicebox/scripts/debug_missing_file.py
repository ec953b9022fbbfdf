"""Utility script to check that an invoice's images exist in blob storage.

Usage (from the backend directory):

python -m invoicebox.scripts.debug_missing_file <invoice_id>

Prints for each linked image:
- reference and status
- whether the blob exists in the configured store
- resolved full path (filesystem backend only)
"""
from pathlib import Path
import sys
import asyncio

# Directory layout: backend/invoicebox/scripts/debug_missing_file.py
# parents[0]=scripts, [1]=invoicebox, [2]=backend
_BACKEND_DIR = Path(__file__).resolve().parents[2]
if str(_BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(_BACKEND_DIR))

from invoicebox.core.config import settings  # noqa: E402
from invoicebox.core.database import AsyncSessionLocal  # noqa: E402
from invoicebox.services.invoice_store import InvoiceStore  # noqa: E402
from invoicebox.services.storage_service import FilesystemBlobStore, create_blob_store  # noqa: E402


async def _run_async(invoice_id: int):
    store = create_blob_store(settings)
    async with AsyncSessionLocal() as session:
        records = InvoiceStore(session)
        if not await records.exists(invoice_id):
            print(f"Invoice {invoice_id} not found")
            return
        links = await records.links_for(invoice_id)
        if not links:
            print(f"Invoice {invoice_id} has no images")
            return
        for link in links:
            present = await store.exists(link.reference)
            print(f"{link.reference} status={link.status.value} exists={present}")
            if isinstance(store, FilesystemBlobStore):
                print(f"  full path: {store.get_full_path(link.reference)}")


def main():
    if len(sys.argv) < 2:
        print("Provide invoice_id")
        return
    asyncio.run(_run_async(int(sys.argv[1])))

if __name__ == '__main__':
    main()
