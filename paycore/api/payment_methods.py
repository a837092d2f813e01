from typing import List

from fastapi import APIRouter, Depends, status

from paycore.api.deps import get_current_user_id, get_payment_method_service
from paycore.model.payment_method import PaymentMethodOut, PaymentMethodVault
from paycore.service.payment_method import PaymentMethodService

router = APIRouter()


@router.get("", response_model=List[PaymentMethodOut])
async def list_payment_methods(
    service: PaymentMethodService = Depends(get_payment_method_service),
    user_id: int = Depends(get_current_user_id),
):
    methods = await service.list_methods(user_id)
    return [PaymentMethodOut.model_validate(m) for m in methods]


@router.post("", response_model=PaymentMethodOut, status_code=status.HTTP_201_CREATED)
async def vault_payment_method(
    payload: PaymentMethodVault,
    service: PaymentMethodService = Depends(get_payment_method_service),
    user_id: int = Depends(get_current_user_id),
):
    method = await service.vault(user_id, payload.provider_token_id, payload.gateway, payload.card)
    return PaymentMethodOut.model_validate(method)


@router.post("/{method_id}/default", response_model=PaymentMethodOut)
async def set_default_payment_method(
    method_id: int,
    service: PaymentMethodService = Depends(get_payment_method_service),
    user_id: int = Depends(get_current_user_id),
):
    method = await service.set_default(user_id, method_id)
    return PaymentMethodOut.model_validate(method)


@router.delete("/{method_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_payment_method(
    method_id: int,
    service: PaymentMethodService = Depends(get_payment_method_service),
    user_id: int = Depends(get_current_user_id),
):
    await service.delete(method_id, user_id)
