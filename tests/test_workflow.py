import asyncio

import pytest

from conftest import member, registration_data
from festgate.errors import (
    AlreadySubmitted, DuplicateKey, IncompleteGroupDetails,
    MissingPaymentProof, RejectionReasonRequired, SignatureInvalid,
    StaleState, Unauthorized, ValidationFailed,
)
from festgate.helpers import now_ts
from festgate.model.orm import (
    COMPLETED, FAILED, PAID_AWAITING_VERIFICATION, PENDING, VERIFIED,
)


async def test_create_registration_prices_and_stores_pending(
        workflow) -> None:
    reg = await workflow.create_registration(
        registration_data(email="  Asha@Example.COM "))
    assert reg.payment_status == PENDING
    assert reg.email == "asha@example.com"
    assert reg.total_amount == reg.amount == 19900
    assert reg.ticket_number is None


async def test_duplicate_email_is_rejected(workflow) -> None:
    await workflow.create_registration(registration_data())
    with pytest.raises(DuplicateKey) as exc:
        await workflow.create_registration(
            registration_data(email="ASHA@example.com"))
    assert exc.value.field == "email"


async def test_invalid_identity_reports_fields(workflow) -> None:
    with pytest.raises(ValidationFailed) as exc:
        await workflow.create_registration(
            registration_data(email="nope", year="5th Year"))
    assert set(exc.value.details["fields"]) == {"email", "year"}


async def test_group_of_four_needs_four_members_before_payment(
        workflow) -> None:
    """Four paid seats come with a fifth free one; four members named."""
    reg = await workflow.create_registration(
        registration_data(ticketQuantity=4, groupMembers=[member(1)]))
    assert reg.total_amount == 4 * 19900
    assert reg.is_group_booking

    with pytest.raises(IncompleteGroupDetails) as exc:
        await workflow.submit_manual_payment(reg.id, "UTR1", "shot")
    assert exc.value.details == {"expected": 4, "received": 1}

    await workflow.update_group_members(reg.id,
                                        [member(i) for i in range(4)])
    reg = await workflow.submit_manual_payment(reg.id, "UTR1", "shot")
    assert reg.payment_status == PAID_AWAITING_VERIFICATION
    assert [m.position for m in reg.group_members] == [1, 2, 3, 4]


async def test_members_frozen_after_submission(workflow,
                                               make_registration) -> None:
    reg = await make_registration(ticketQuantity=2,
                                  groupMembers=[member(1)])
    await workflow.submit_manual_payment(reg.id, "UTR1", "shot")
    with pytest.raises(AlreadySubmitted):
        await workflow.update_group_members(reg.id, [member(2)])


async def test_manual_proof_is_required(workflow, make_registration) -> None:
    reg = await make_registration()
    with pytest.raises(MissingPaymentProof) as exc:
        await workflow.submit_manual_payment(reg.id, "  ", None)
    assert exc.value.details["missing"] == ["upiTransactionId",
                                            "paymentScreenshot"]


async def test_second_manual_submission_is_already_submitted(
        workflow, make_registration) -> None:
    reg = await make_registration()
    await workflow.submit_manual_payment(reg.id, "UTR1", "shot-1")
    with pytest.raises(AlreadySubmitted):
        await workflow.submit_manual_payment(reg.id, "UTR2", "shot-2")
    reg = await workflow.store.get(reg.id)
    assert reg.upi_transaction_id == "UTR1"


async def test_approval_issues_ticket_and_emails_it(
        workflow, make_registration, admin, outbox) -> None:
    reg = await make_registration(ticketQuantity=4,
                                  groupMembers=[member(i) for i in range(4)])
    await workflow.submit_manual_payment(reg.id, "UTR1", "shot")
    reg = await workflow.approve(reg.id, admin, notes="matches bank")

    assert reg.payment_status == COMPLETED
    assert reg.verified_by == "admin"
    assert reg.email_sent_at is not None
    assert reg.ticket_number
    assert all(m.ticket_number for m in reg.group_members)

    [mail] = outbox.to(reg.email)
    assert len(mail["attachments"]) == 5
    assert reg.ticket_number in mail["text"]


async def test_only_admins_review(workflow, make_registration,
                                  scanner) -> None:
    reg = await make_registration()
    await workflow.submit_manual_payment(reg.id, "UTR1", "shot")
    with pytest.raises(Unauthorized):
        await workflow.approve(reg.id, scanner)


async def test_concurrent_approvals_one_wins(workflow, make_registration,
                                             admin) -> None:
    reg = await make_registration()
    await workflow.submit_manual_payment(reg.id, "UTR1", "shot")

    results = await asyncio.gather(
        workflow.approve(reg.id, admin),
        workflow.approve(reg.id, admin),
        return_exceptions=True,
    )
    stale = [r for r in results if isinstance(r, StaleState)]
    done = [r for r in results if not isinstance(r, Exception)]
    assert len(stale) == 1
    assert len(done) == 1
    assert done[0].payment_status in (VERIFIED, COMPLETED)


async def test_reject_requires_reason_then_reopens(
        workflow, make_registration, admin, outbox) -> None:
    reg = await make_registration()
    await workflow.submit_manual_payment(reg.id, "UTR1", "shot")

    with pytest.raises(RejectionReasonRequired):
        await workflow.reject(reg.id, admin, "   ")
    assert (await workflow.store.get(reg.id)).payment_status == \
        PAID_AWAITING_VERIFICATION

    reg = await workflow.reject(reg.id, admin, "UTR not found")
    assert reg.payment_status == PENDING
    assert reg.upi_transaction_id is None
    assert reg.payment_screenshot is None
    assert reg.payment_submitted_at is None
    assert reg.rejection_reason == "UTR not found"
    assert "UTR not found" in outbox.to(reg.email)[0]["text"]

    # can submit again after rejection
    reg = await workflow.submit_manual_payment(reg.id, "UTR2", "shot")
    assert reg.payment_status == PAID_AWAITING_VERIFICATION


async def test_notification_failure_leaves_verified(
        workflow, make_registration, admin, outbox) -> None:
    """Payment confirmed, ticket pending until the email goes out."""
    reg = await make_registration()
    await workflow.submit_manual_payment(reg.id, "UTR1", "shot")
    outbox.fail_with = "smtp down"

    reg = await workflow.approve(reg.id, admin)
    assert reg.payment_status == VERIFIED
    assert reg.notification_error == "smtp down"
    number = reg.ticket_number
    assert number

    outbox.fail_with = None
    reg = await workflow.resend_ticket(reg.id, admin)
    assert reg.payment_status == COMPLETED
    assert reg.ticket_number == number
    assert reg.notification_error is None


async def test_gateway_success_converges_with_manual_path(
        workflow, make_registration, gateway) -> None:
    reg = await make_registration()
    order = await workflow.create_gateway_order(reg.id)
    assert order["amount"] == reg.total_amount

    # same order is reused on a second call
    assert (await workflow.create_gateway_order(reg.id))["orderId"] == \
        order["orderId"]

    checkout = gateway.emit(order["orderId"], "captured")["checkout"]
    reg = await workflow.confirm_gateway_payment(
        checkout["razorpay_order_id"], checkout["razorpay_payment_id"],
        checkout["razorpay_signature"])
    assert reg.payment_status == COMPLETED
    assert reg.gateway_payment_id == checkout["razorpay_payment_id"]
    assert reg.ticket_number

    # replayed confirmation is idempotent
    again = await workflow.confirm_gateway_payment(
        checkout["razorpay_order_id"], checkout["razorpay_payment_id"],
        checkout["razorpay_signature"])
    assert again.ticket_number == reg.ticket_number


async def test_bad_signature_never_transitions(workflow, make_registration,
                                               gateway) -> None:
    reg = await make_registration()
    order = await workflow.create_gateway_order(reg.id)
    with pytest.raises(SignatureInvalid):
        await workflow.confirm_gateway_payment(order["orderId"], "pay_x",
                                               "forged")
    assert (await workflow.store.get(reg.id)).payment_status == PENDING


async def test_webhook_failure_then_retry(workflow, make_registration,
                                          gateway, admin) -> None:
    reg = await make_registration()
    order = await workflow.create_gateway_order(reg.id)

    sim = gateway.emit(order["orderId"], "failed")
    out = await workflow.handle_webhook(sim["payload"], sim["headers"])
    assert out["paymentStatus"] == FAILED

    # a redelivered failure is harmless
    out = await workflow.handle_webhook(sim["payload"], sim["headers"])
    assert out["paymentStatus"] == FAILED

    reg = await workflow.set_payment_status(reg.id, admin, PENDING)
    assert reg.payment_status == PENDING


async def test_webhook_rejects_forged_body(workflow, make_registration,
                                           gateway) -> None:
    reg = await make_registration()
    order = await workflow.create_gateway_order(reg.id)
    sim = gateway.emit(order["orderId"], "captured")
    with pytest.raises(SignatureInvalid):
        await workflow.handle_webhook(sim["payload"] + b" ",
                                      sim["headers"])
    assert (await workflow.store.get(reg.id)).payment_status == PENDING


async def test_status_poll_recovers_missed_callback(
        workflow, make_registration, gateway) -> None:
    """Payment captured at the gateway but no webhook ever arrived."""
    reg = await make_registration()
    order = await workflow.create_gateway_order(reg.id)
    reg = await workflow.check_payment_status(order["orderId"])
    assert reg.payment_status == PENDING

    gateway.emit(order["orderId"], "captured")  # dropped on the floor
    reg = await workflow.check_payment_status(order["orderId"])
    assert reg.payment_status == COMPLETED
    assert reg.ticket_number


async def test_late_capture_after_failed_attempt(workflow,
                                                 make_registration,
                                                 gateway) -> None:
    reg = await make_registration()
    order = await workflow.create_gateway_order(reg.id)
    sim = gateway.emit(order["orderId"], "failed")
    await workflow.handle_webhook(sim["payload"], sim["headers"])

    sim = gateway.emit(order["orderId"], "captured")
    out = await workflow.handle_webhook(sim["payload"], sim["headers"])
    assert out["paymentStatus"] == COMPLETED


async def test_concurrent_webhooks_send_one_ticket_email(
        workflow, make_registration, gateway, outbox) -> None:
    reg = await make_registration()
    order = await workflow.create_gateway_order(reg.id)
    sim = gateway.emit(order["orderId"], "captured")

    await asyncio.gather(*[
        workflow.handle_webhook(sim["payload"], sim["headers"])
        for _ in range(6)
    ])
    reg = await workflow.store.get(reg.id)
    assert reg.payment_status == COMPLETED
    assert reg.notifying_at is None
    assert len(outbox.to(reg.email)) == 1


async def test_webhook_and_checkout_race_sends_one_email(
        workflow, make_registration, gateway, outbox) -> None:
    reg = await make_registration()
    order = await workflow.create_gateway_order(reg.id)
    sim = gateway.emit(order["orderId"], "captured")
    checkout = sim["checkout"]

    await asyncio.gather(
        workflow.handle_webhook(sim["payload"], sim["headers"]),
        workflow.confirm_gateway_payment(
            checkout["razorpay_order_id"], checkout["razorpay_payment_id"],
            checkout["razorpay_signature"]),
        workflow.check_payment_status(order["orderId"]),
    )
    assert (await workflow.store.get(reg.id)).payment_status == COMPLETED
    assert len(outbox.to(reg.email)) == 1


async def test_status_poll_sees_gateway_failure(
        workflow, make_registration, gateway, admin) -> None:
    """Payment failed at the gateway and the webhook never arrived."""
    reg = await make_registration()
    order = await workflow.create_gateway_order(reg.id)
    gateway.emit(order["orderId"], "failed")  # dropped on the floor

    reg = await workflow.check_payment_status(order["orderId"])
    assert reg.payment_status == FAILED
    # polling again is harmless
    reg = await workflow.check_payment_status(order["orderId"])
    assert reg.payment_status == FAILED

    reg = await workflow.set_payment_status(reg.id, admin, PENDING)
    assert reg.payment_status == PENDING


async def test_rejection_stands_when_notice_fails(
        workflow, make_registration, admin, outbox) -> None:
    reg = await make_registration()
    await workflow.submit_manual_payment(reg.id, "UTR1", "shot")
    outbox.fail_with = "smtp down"

    reg = await workflow.reject(reg.id, admin, "UTR not found")
    assert reg.payment_status == PENDING
    assert reg.rejection_reason == "UTR not found"
    assert reg.notification_error == "smtp down"
    assert outbox.messages == []


async def test_crashing_notifier_is_recorded(
        workflow, make_registration, admin, outbox, monkeypatch) -> None:
    async def boom(*args, **kwargs):
        raise RuntimeError("mailer exploded")

    reg = await make_registration()
    await workflow.submit_manual_payment(reg.id, "UTR1", "shot")
    monkeypatch.setattr(outbox, "send", boom)

    reg = await workflow.approve(reg.id, admin)
    assert reg.payment_status == VERIFIED
    assert reg.ticket_number
    assert reg.notification_error == "RuntimeError: mailer exploded"
    assert reg.notifying_at is None

    monkeypatch.undo()
    reg = await workflow.resend_ticket(reg.id, admin)
    assert reg.payment_status == COMPLETED
    assert len(outbox.to(reg.email)) == 1


async def test_resend_takes_over_an_abandoned_send(
        workflow, make_registration, admin, outbox) -> None:
    reg = await make_registration()
    await workflow.submit_manual_payment(reg.id, "UTR1", "shot")
    outbox.fail_with = "smtp down"
    reg = await workflow.approve(reg.id, admin)
    outbox.fail_with = None

    # a sender that died after claiming the email
    await workflow.store.set_fields(reg.id, {"notifying_at": now_ts()})
    reg = await workflow.finalize(reg.id)
    assert reg.payment_status == VERIFIED
    assert outbox.messages == []

    reg = await workflow.resend_ticket(reg.id, admin)
    assert reg.payment_status == COMPLETED
    assert reg.notifying_at is None
    assert len(outbox.to(reg.email)) == 1


async def test_set_fields_cannot_move_status(workflow,
                                             make_registration) -> None:
    reg = await make_registration()
    with pytest.raises(ValueError):
        await workflow.store.set_fields(reg.id,
                                        {"payment_status": COMPLETED})
    assert (await workflow.store.get(reg.id)).payment_status == PENDING


async def test_bulk_notification_targets_one_group(
        workflow, make_registration, paid_registration, admin,
        outbox) -> None:
    paid = await paid_registration(email="paid@example.com")
    await make_registration(email="waiting@example.com", name="Bela")
    outbox.messages.clear()

    out = await workflow.send_bulk_notification(
        admin, "Gate timings", "Gates open at 9.\n\nBring college ID.",
        PENDING)
    assert out == {"targetGroup": PENDING, "subject": "Gate timings",
                   "total": 1, "sent": 1, "failed": 0, "errors": []}
    [mail] = outbox.messages
    assert mail["to"] == "waiting@example.com"
    assert "Hi Bela" in mail["text"]
    assert "<p>Bring college ID.</p>" in mail["html"]

    out = await workflow.send_bulk_notification(
        admin, "Gate timings", "See you there", "all")
    assert out["total"] == out["sent"] == 2
    assert len(outbox.to(paid.email)) == 1


async def test_bulk_notification_tallies_failures(
        workflow, make_registration, admin, outbox) -> None:
    await make_registration(email="a@example.com")
    await make_registration(email="b@example.com")
    outbox.fail_with = "smtp down"

    out = await workflow.send_bulk_notification(admin, "Hi", "Hello")
    assert (out["sent"], out["failed"], out["total"]) == (0, 2, 2)
    assert {e["email"] for e in out["errors"]} == {"a@example.com",
                                                  "b@example.com"}
    assert all(e["reason"] == "smtp down" for e in out["errors"])


async def test_bulk_notification_validates(workflow, admin,
                                           scanner) -> None:
    with pytest.raises(ValidationFailed) as exc:
        await workflow.send_bulk_notification(admin, " ", "", "verified")
    assert set(exc.value.details["fields"]) == {"subject", "message",
                                                "targetGroup"}
    with pytest.raises(Unauthorized):
        await workflow.send_bulk_notification(scanner, "Hi", "Hello")
