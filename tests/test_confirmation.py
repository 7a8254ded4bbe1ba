"""Confirmation state machine: first-time confirmation, expiry, reconfirmation races."""

import pytest

from gatehouse.service.context import RequestContext
from gatehouse.service.errors import EmailNoLongerAvailable, InvalidOrExpiredToken
from gatehouse.service.tokens import TokenPurpose
from gatehouse.storage.models import ConfirmationState


async def test_sign_up_confirm_and_login(services):
    user = await services.accounts.sign_up(
        "alice@example.com", "correct-horse-battery", "correct-horse-battery"
    )
    assert user.confirmed_at is None
    assert user.confirmation_state is ConfirmationState.UNCONFIRMED

    message = services.mailer.last(TokenPurpose.CONFIRM_EMAIL)
    assert message.to == "alice@example.com"

    services.clock.advance(9 * 60)
    confirmed = await services.confirmations.confirm(message.token)
    assert confirmed.confirmed_at is not None
    assert confirmed.confirmation_state is ConfirmationState.CONFIRMED

    ctx = RequestContext()
    active = await services.auth.login(ctx, confirmed)
    assert active.user_id == user.id
    assert await services.auth.resolve_current_user(ctx) == confirmed


async def test_confirmation_after_expiry_is_rejected(services):
    user = await services.accounts.sign_up(
        "alice@example.com", "correct-horse-battery", "correct-horse-battery"
    )
    token = services.mailer.last(TokenPurpose.CONFIRM_EMAIL).token

    services.clock.advance(601)
    with pytest.raises(InvalidOrExpiredToken):
        await services.confirmations.confirm(token)
    assert services.store.get_user(user.id).confirmed_at is None


async def test_reconfirmation_loses_race_for_taken_email(services):
    alice = services.create_user("alice@example.com")
    services.store.update_user(alice.id, unconfirmed_email="alice2@example.com")
    alice = services.store.get_user(alice.id)
    assert alice.confirmation_state is ConfirmationState.RECONFIRMING

    token = await services.confirmations.send_confirmation(alice)
    assert services.mailer.last().to == "alice2@example.com"
    services.create_user("alice2@example.com")

    with pytest.raises(EmailNoLongerAvailable):
        await services.confirmations.confirm(token)

    unchanged = services.store.get_user(alice.id)
    assert unchanged.email == "alice@example.com"
    assert unchanged.unconfirmed_email == "alice2@example.com"
    assert unchanged.confirmed_at == alice.confirmed_at


async def test_reconfirmation_moves_pending_email(services):
    alice = services.create_user("alice@example.com")
    services.store.update_user(alice.id, unconfirmed_email="alice2@example.com")
    token = await services.confirmations.send_confirmation(services.store.get_user(alice.id))

    confirmed = await services.confirmations.confirm(token)

    assert confirmed.email == "alice2@example.com"
    assert confirmed.unconfirmed_email is None
    assert confirmed.confirmation_state is ConfirmationState.CONFIRMED


async def test_already_confirmed_user_cannot_reuse_token(services):
    await services.accounts.sign_up(
        "alice@example.com", "correct-horse-battery", "correct-horse-battery"
    )
    token = services.mailer.last(TokenPurpose.CONFIRM_EMAIL).token
    await services.confirmations.confirm(token)

    with pytest.raises(InvalidOrExpiredToken):
        await services.confirmations.confirm(token)


async def test_reset_token_cannot_confirm(services):
    user = services.create_user("alice@example.com", confirmed=False)
    token = services.codec.issue(user.id, TokenPurpose.RESET_PASSWORD)
    with pytest.raises(InvalidOrExpiredToken):
        await services.confirmations.confirm(token)


async def test_token_for_deleted_user(services):
    user = services.create_user("alice@example.com", confirmed=False)
    token = services.codec.issue(user.id, TokenPurpose.CONFIRM_EMAIL)
    services.store.delete_user(user.id)
    with pytest.raises(InvalidOrExpiredToken):
        await services.confirmations.confirm(token)


class TestRequestConfirmation:
    async def test_unconfirmed_user_gets_mail(self, services):
        services.create_user("alice@example.com", confirmed=False)
        await services.confirmations.request_confirmation("ALICE@example.com")
        assert services.mailer.last(TokenPurpose.CONFIRM_EMAIL).to == "alice@example.com"

    async def test_reconfirming_user_gets_mail_at_pending_address(self, services):
        user = services.create_user("alice@example.com")
        services.store.update_user(user.id, unconfirmed_email="new@example.com")
        await services.confirmations.request_confirmation("alice@example.com")
        assert services.mailer.last().to == "new@example.com"

    @pytest.mark.parametrize("email", ["nobody@example.com", "alice@example.com"])
    async def test_no_mail_for_unknown_or_confirmed(self, services, email):
        services.create_user("alice@example.com")
        result = await services.confirmations.request_confirmation(email)
        assert result is None
        assert services.mailer.messages == []


async def test_failing_mailer_does_not_fail_sign_up(services):
    class BrokenMailer:
        def deliver(self, user, token, purpose):
            raise ConnectionError("smtp down")

    services.confirmations.mailer = BrokenMailer()
    user = await services.accounts.sign_up(
        "alice@example.com", "correct-horse-battery", "correct-horse-battery"
    )
    assert services.store.get_user(user.id) is not None
