import asyncio
from invoicebox.core.database import get_db
from invoicebox.models.enums import AttachmentStatus
from invoicebox.models.tables import Invoice, InvoiceAttachment
from sqlalchemy import select, func

async def check_db():
    async for session in get_db():
        try:
            total = (await session.execute(select(func.count(Invoice.id)))).scalar()
            print(f'Total invoices in database: {total}')
            images = (await session.execute(select(func.count(InvoiceAttachment.id)))).scalar()
            pending = (
                await session.execute(
                    select(func.count(InvoiceAttachment.id)).where(
                        InvoiceAttachment.status == AttachmentStatus.PENDING_NORMALIZATION
                    )
                )
            ).scalar()
            print(f'Total images: {images} (pending normalization: {pending})')

            # Get latest invoices
            result = await session.execute(
                select(Invoice).order_by(Invoice.id.desc()).limit(5)
            )
            invoices = result.scalars().all()

            if invoices:
                print('\nLatest invoices:')
                for inv in invoices:
                    print(f'ID: {inv.id}, Receipt: {inv.receipt_number}, Type: {inv.receipt_type}, Created: {inv.created_at}')
            else:
                print('No invoices found in database')
        finally:
            await session.close()
        break

if __name__ == "__main__":
    asyncio.run(check_db())
