"""Builders for responses that wrap service dataclasses rather than models."""

from escrow_ledger.schemas.payment import (
    EscrowResponse,
    ReleaseResponse,
    ReversalOutcomeResponse,
    ReversalResponse,
    SplitResponse,
    TransferResponse,
)
from escrow_ledger.services.escrow import ReleaseResult, ReversalResult


def release_response(result: ReleaseResult) -> ReleaseResponse:
    return ReleaseResponse(
        job_id=result.job_id,
        already_released=result.already_released,
        escrow=EscrowResponse.model_validate(result.escrow),
        split=SplitResponse(**result.split.to_dict()),
        transfers=[TransferResponse.model_validate(t) for t in result.transfers],
    )


def reversal_response(result: ReversalResult) -> ReversalResponse:
    return ReversalResponse(
        job_id=result.job_id,
        reversed_cents=result.reversed_cents,
        already_reversed=result.already_reversed,
        outcomes=[
            ReversalOutcomeResponse(
                recipient_role=o.recipient_role.value,
                status=o.status,
                amount_cents=o.amount_cents,
                error=o.error,
            )
            for o in result.outcomes
        ],
    )
