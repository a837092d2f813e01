import pytest
from sqlalchemy import func, select

from paycore.common.exception import (
    CapabilityUnsupported,
    IntegrityException,
    OwnershipMismatch,
    RecordNotFoundException,
)
from paycore.common.payment_enums import PaymentMethodStatus
from paycore.data.dbinit import unit_of_work
from paycore.data.payment_method import PaymentMethod, create_payment_method, get_payment_method
from paycore.model.gateway import CardDetails
from paycore.service.payment_method import PaymentMethodService


async def default_ids(db, user_id):
    result = await db.execute(
        select(PaymentMethod.id)
        .where(PaymentMethod.user_id == user_id)
        .where(PaymentMethod.is_default.is_(True))
    )
    return list(result.scalars().all())


async def test_first_method_becomes_default(method_service, db):
    first = await method_service.vault(1, "tok_visa_4242")
    second = await method_service.vault(1, "tok_mc_5555")

    assert first.is_default is True
    assert second.is_default is False
    assert first.last_four == "4242"
    assert first.metadata_json["gateway"] == "fake"
    assert await default_ids(db, 1) == [first.id]


async def test_vault_same_token_twice_returns_existing(method_service, db):
    first = await method_service.vault(1, "tok_visa_4242")
    again = await method_service.vault(1, "tok_visa_4242")

    assert again.id == first.id
    count = await db.scalar(select(func.count()).select_from(PaymentMethod).where(PaymentMethod.user_id == 1))
    assert count == 1


async def test_vault_with_card_skips_gateway_lookup(method_service, gateways, mocker):
    lookup = mocker.spy(gateways.driver("fake"), "get_payment_token_details")
    card = CardDetails(brand="amex", last_four="0005", exp_month=1, exp_year=2031, billing_country="GB")

    method = await method_service.vault(1, "tok_amex", card=card)

    assert method.brand == "amex"
    assert method.billing_country == "GB"
    lookup.assert_not_called()


async def test_vault_without_token_details_support(method_service, gateways, mocker):
    mocker.patch.object(gateways.driver("fake"), "supports_token_details", return_value=False)
    with pytest.raises(CapabilityUnsupported):
        await method_service.vault(1, "tok_visa_4242")


async def test_set_default_keeps_single_default(method_service, db):
    first = await method_service.vault(1, "tok_visa_4242")
    second = await method_service.vault(1, "tok_mc_5555")
    other_user = await method_service.vault(2, "tok_visa_1111")

    updated = await method_service.set_default(1, second.id)

    assert updated.is_default is True
    assert await default_ids(db, 1) == [second.id]
    assert await default_ids(db, 2) == [other_user.id]
    assert first.id not in await default_ids(db, 1)


async def test_set_default_of_someone_elses_method(method_service):
    method = await method_service.vault(1, "tok_visa_4242")
    with pytest.raises(OwnershipMismatch):
        await method_service.set_default(2, method.id)


async def test_delete_default_promotes_next(method_service, db):
    first = await method_service.vault(1, "tok_visa_4242")
    second = await method_service.vault(1, "tok_mc_5555")

    removed = await method_service.delete(first.id, user_id=1)

    assert removed.status == PaymentMethodStatus.REMOVED.value
    assert removed.is_default is False
    assert removed.deleted_at is not None
    assert await default_ids(db, 1) == [second.id]
    methods = await method_service.list_methods(1)
    assert [m.id for m in methods] == [second.id]


async def test_delete_last_method_leaves_no_default(method_service, db):
    method = await method_service.vault(1, "tok_visa_4242")
    await method_service.delete(method.id, user_id=1)

    assert await default_ids(db, 1) == []
    assert await method_service.get_default(1) is None


async def test_deleted_method_cannot_be_used_again(method_service, db):
    method = await method_service.vault(1, "tok_visa_4242")
    await method_service.delete(method.id)

    with pytest.raises(RecordNotFoundException):
        await method_service.set_default(1, method.id)
    # Re-vaulting a removed token creates a fresh row
    fresh = await method_service.vault(1, "tok_visa_4242")
    assert fresh.id != method.id
    assert (await get_payment_method(db, method.id)).status == PaymentMethodStatus.REMOVED.value


async def test_delete_someone_elses_method(method_service):
    method = await method_service.vault(1, "tok_visa_4242")
    with pytest.raises(OwnershipMismatch):
        await method_service.delete(method.id, user_id=2)


async def test_schema_allows_one_active_default_per_user(db):
    async with unit_of_work(db):
        await create_payment_method(db, user_id=1, provider="fake", provider_token_id="tok_a", is_default=True)

    with pytest.raises(IntegrityException):
        async with unit_of_work(db):
            await create_payment_method(db, user_id=1, provider="fake", provider_token_id="tok_b", is_default=True)

    assert len(await default_ids(db, 1)) == 1


async def test_schema_allows_one_active_row_per_token(db):
    async with unit_of_work(db):
        await create_payment_method(db, user_id=1, provider="fake", provider_token_id="tok_a")

    with pytest.raises(IntegrityException):
        async with unit_of_work(db):
            await create_payment_method(db, user_id=1, provider="fake", provider_token_id="tok_a")


async def test_vault_that_loses_first_default_race_retries(method_service, db, mocker):
    first = await method_service.vault(1, "tok_visa_4242")
    # The concurrent first vault had not committed when this one looked
    mocker.patch(
        "paycore.service.payment_method.has_active_method",
        new_callable=mocker.AsyncMock,
        side_effect=[False, True],
    )

    second = await method_service.vault(1, "tok_mc_5555")

    assert second.is_default is False
    assert await default_ids(db, 1) == [first.id]


async def test_set_default_from_stale_sessions_keeps_single_default(session_factory, gateways, db):
    async with session_factory() as other_db:
        service = PaymentMethodService(db, gateways)
        other = PaymentMethodService(other_db, gateways)

        a = await service.vault(1, "tok_visa_4242")
        b = await service.vault(1, "tok_mc_5555")
        c = await service.vault(1, "tok_amex_0005")
        # Both sessions hold the user's methods in their identity maps
        await other.list_methods(1)
        await other_db.commit()

        await other.set_default(1, c.id)
        await service.set_default(1, b.id)

        assert await default_ids(db, 1) == [b.id]
        assert (await service.get_default(1)).id == b.id
        assert a.id not in await default_ids(db, 1)
