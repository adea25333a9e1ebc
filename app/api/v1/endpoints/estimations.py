"""API endpoints for estimations: conversion to quotation and status changes."""
from uuid import UUID

from fastapi import APIRouter, status

from app.api.deps import DB, CurrentActor
from app.schemas.conversion import (
    EstimationConvertRequest,
    EstimationConvertResponse,
    StatusChangeRequest,
    StatusChangeResponse,
)
from app.services.conversion_service import ConversionService
from app.services.document_service import DocumentService
from app.services.document_state_machine import DocumentKind

router = APIRouter()


@router.post(
    "/{estimation_id}/convert",
    response_model=EstimationConvertResponse,
    status_code=status.HTTP_201_CREATED,
)
async def convert_estimation(
    estimation_id: UUID,
    payload: EstimationConvertRequest,
    db: DB,
    actor: CurrentActor,
):
    """
    Convert an estimation into a tax-inclusive quotation.

    Every estimation item needs an HSN/SAC code and GST rate. All invalid
    items are reported together (422); a second conversion returns 409.
    """
    service = ConversionService(db)
    quotation = await service.convert_estimation_to_quotation(
        estimation_id,
        payload.items,
        actor,
        force_inter_state=payload.force_inter_state,
    )
    return EstimationConvertResponse(
        quotation_id=quotation.id,
        quotation_number=quotation.quotation_number,
    )


@router.post("/{estimation_id}/status", response_model=StatusChangeResponse)
async def change_estimation_status(
    estimation_id: UUID,
    payload: StatusChangeRequest,
    db: DB,
    actor: CurrentActor,
):
    """Mark an estimation SENT or EXPIRED."""
    estimation = await DocumentService(db).change_status(
        DocumentKind.ESTIMATION, estimation_id, payload.normalized(), actor
    )
    return StatusChangeResponse(id=estimation.id, status=estimation.status)
