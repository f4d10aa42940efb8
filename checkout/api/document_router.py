from fastapi import APIRouter, Depends, Query, Response

from checkout.api.deps import get_services
from checkout.container import Services

router = APIRouter(prefix="/api/documents", tags=["documents"])


@router.get("")
async def list_documents(
    payment_reference: str = Query(..., alias="paymentReference"),
    services: Services = Depends(get_services),
):
    documents = await services.documents.list_for_payment(payment_reference)
    return [
        {"id": d.id, "kind": d.kind, "filename": d.filename, "createdAt": d.created_at}
        for d in documents
    ]


@router.get("/{document_id}")
async def get_document(document_id: str, services: Services = Depends(get_services)):
    document = await services.documents.get(document_id)
    return Response(
        content=document.content,
        media_type=document.content_type,
        headers={"Content-Disposition": f'inline; filename="{document.filename}"'},
    )
