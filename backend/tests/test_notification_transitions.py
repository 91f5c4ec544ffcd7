"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Konipai CRM - Transition → Notification Testing                             ║
║                                                                              ║
║  1. Planification pure (plan_notifications)                                  ║
║  2. Résolution des liens / transporteur / montant de remboursement           ║
║  3. Envoi réel via le dispatcher (faux WhatsApp, faux PocketBase)            ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import base64
import json

import pytest

from models import Order, OrderTransition, NotificationKind, SendResult
from services.notification_dispatcher import (
    plan_notifications,
    plan_order_confirmation,
    plan_feedback_request,
    plan_manual_message,
    CUSTOM_MESSAGE,
    NotificationDispatcher,
    tracking_fallback_link,
)
from services.message_templates import TemplateStore

from tests.conftest import FakeWhatsApp, FakeEmailSender, kinds

ORIGIN = "https://shop.example.com"


def make_order(**fields):
    data = {
        "id": "O1",
        "status": "pending",
        "payment_status": "pending",
        "customer_name": "Asha",
        "customer_phone": "+919998887776",
        "total": 1499,
    }
    data.update(fields)
    return Order.model_validate(data)


def make_transition(before, patch):
    return OrderTransition(
        old_status=before.get("status"),
        new_status=patch.get("status"),
        old_payment_status=before.get("payment_status"),
        new_payment_status=patch.get("payment_status"),
        patch=patch,
    )


def plan(before, patch, **order_fields):
    """Planifie comme le gateway: order = record après application du patch"""
    after = dict(before)
    after.update(order_fields)
    after.update(patch)
    return plan_notifications(make_order(**after), make_transition(before, patch), ORIGIN)


PENDING = {"status": "pending", "payment_status": "pending"}


class TestPaymentSuccess:
    """processing + paid → exactement un PAYMENT_SUCCESS"""

    def test_status_and_payment_in_same_patch(self):
        actions = plan(PENDING, {"status": "processing", "payment_status": "paid"})
        assert kinds(actions) == [NotificationKind.PAYMENT_SUCCESS.value]
        assert actions[0].parameters["amount"] == "1499"
        print("✅ processing + paid dans le même patch → 1 PAYMENT_SUCCESS")

    def test_processing_with_already_paid_order(self):
        actions = plan({"status": "pending", "payment_status": "paid"}, {"status": "processing"})
        assert kinds(actions) == [NotificationKind.PAYMENT_SUCCESS.value]
        print("✅ processing sur commande déjà payée → 1 PAYMENT_SUCCESS")

    def test_processing_on_paid_order_with_redundant_paid(self):
        actions = plan(
            {"status": "pending", "payment_status": "paid"},
            {"status": "processing", "payment_status": "paid"},
        )
        assert kinds(actions) == [NotificationKind.PAYMENT_SUCCESS.value]

    def test_processing_without_payment_sends_nothing(self):
        assert plan(PENDING, {"status": "processing"}) == []

    def test_paid_alone_sends_payment_success(self):
        actions = plan(PENDING, {"payment_status": "paid"})
        assert kinds(actions) == [NotificationKind.PAYMENT_SUCCESS.value]
        assert actions[0].parameters["orderLink"] == f"{ORIGIN}/orders/O1"

    def test_no_phone_sends_nothing(self):
        actions = plan(PENDING, {"status": "processing", "payment_status": "paid"}, customer_phone="")
        assert actions == []
        print("✅ pas de téléphone → aucune action")


class TestPaymentFailed:

    def test_failed_payment_has_retry_link(self):
        actions = plan(PENDING, {"payment_status": "failed"})
        assert kinds(actions) == [NotificationKind.PAYMENT_FAILED.value]
        assert actions[0].parameters["retryLink"] == f"{ORIGIN}/checkout/retry/O1"
        print(f"✅ PAYMENT_FAILED retry: {actions[0].parameters['retryLink']}")

    def test_same_payment_status_is_not_a_change(self):
        assert plan({"status": "pending", "payment_status": "failed"}, {"payment_status": "failed"}) == []

    def test_back_to_pending_sends_nothing(self):
        assert plan({"status": "pending", "payment_status": "failed"}, {"payment_status": "pending"}) == []


class TestShipped:

    def test_tracking_link_from_patch(self):
        actions = plan(PENDING, {"status": "shipped", "tracking_link": "https://track.example/abc"})
        assert actions[0].kind == NotificationKind.ORDER_SHIPPED.value
        assert actions[0].parameters["trackingLink"] == "https://track.example/abc"

    def test_tracking_link_from_stored_order(self):
        actions = plan(PENDING, {"status": "shipped"}, tracking_link="https://stored.example/1")
        assert actions[0].parameters["trackingLink"] == "https://stored.example/1"

    def test_tracking_link_fallback(self):
        actions = plan(PENDING, {"status": "shipped"})
        assert actions[0].parameters["trackingLink"] == f"{ORIGIN}/track/O1"
        assert actions[0].parameters["trackingLink"] == tracking_fallback_link(ORIGIN + "/", "O1")
        print("✅ tracking fallback: <origin>/track/<id>")

    def test_carrier_resolution(self):
        assert plan(PENDING, {"status": "shipped"})[0].parameters["carrier"] == "Our Delivery Partner"
        actions = plan(PENDING, {"status": "shipped", "shipping_carrier": "BlueDart"})
        assert actions[0].parameters["carrier"] == "BlueDart"
        actions = plan(PENDING, {"status": "shipped"}, shipping_carrier="Delhivery")
        assert actions[0].parameters["carrier"] == "Delhivery"

    def test_shipped_again_sends_nothing(self):
        assert plan({"status": "shipped", "payment_status": "paid"}, {"status": "shipped"}) == []


class TestDeliveryAndCancellation:

    def test_out_for_delivery(self):
        actions = plan({"status": "shipped", "payment_status": "paid"}, {"status": "out_for_delivery"})
        assert kinds(actions) == [NotificationKind.OUT_FOR_DELIVERY.value]

    def test_delivered_has_feedback_link(self):
        actions = plan({"status": "out_for_delivery", "payment_status": "paid"}, {"status": "delivered"})
        assert kinds(actions) == [NotificationKind.ORDER_DELIVERED.value]
        assert actions[0].parameters["feedbackLink"] == f"{ORIGIN}/feedback/O1"

    def test_cancelled_without_refund_sends_nothing(self):
        assert plan(PENDING, {"status": "cancelled"}) == []
        print("✅ cancelled sans refund_amount → rien")

    def test_cancelled_with_refund_in_patch(self):
        actions = plan(PENDING, {"status": "cancelled", "refund_amount": 500})
        assert kinds(actions) == [NotificationKind.REFUND_CONFIRMATION.value]
        assert actions[0].parameters["refundAmount"] == "500"

    def test_cancelled_with_stored_refund(self):
        actions = plan(PENDING, {"status": "cancelled"}, refund_amount=750)
        assert actions[0].parameters["refundAmount"] == "750"

    def test_unknown_transition_target_sends_nothing(self):
        assert plan({"status": "delivered", "payment_status": "paid"}, {"status": "pending"}) == []


class TestBothDimensions:

    def test_shipped_and_paid_send_two(self):
        actions = plan(PENDING, {"status": "shipped", "payment_status": "paid"})
        assert kinds(actions) == [NotificationKind.ORDER_SHIPPED.value, NotificationKind.PAYMENT_SUCCESS.value]

    def test_cancelled_with_refund_and_failed_payment(self):
        actions = plan(PENDING, {"status": "cancelled", "refund_amount": 100, "payment_status": "failed"})
        assert kinds(actions) == [NotificationKind.REFUND_CONFIRMATION.value, NotificationKind.PAYMENT_FAILED.value]


class TestOrderConfirmation:

    def test_confirmation_includes_product_details(self):
        items = [{"name": "Tote Bag", "price": 499.0, "quantity": 2}]
        action = plan_order_confirmation(make_order(), items)
        assert action.kind == NotificationKind.ORDER_CONFIRMATION.value
        assert "2x Tote Bag - ₹499" in action.parameters["productDetails"]
        assert "*Total: ₹998*" in action.parameters["productDetails"]

    def test_confirmation_skipped_without_phone(self):
        assert plan_order_confirmation(make_order(customer_phone="  "), []) is None


class TestManualMessages:
    """Envois déclenchés à la main par le support"""

    def test_feedback_request_has_review_token(self):
        action = plan_feedback_request(make_order(), ORIGIN, product_id="P1", user_id="U1")
        assert action.kind == NotificationKind.REQUEST_REVIEW.value

        link = action.parameters["reviewLink"]
        assert link.startswith(f"{ORIGIN}/feedback?token=")
        payload = json.loads(base64.urlsafe_b64decode(link.split("token=")[1]))
        assert payload["orderId"] == "O1"
        assert payload["productId"] == "P1"
        assert payload["userId"] == "U1"
        assert isinstance(payload["timestamp"], int)

    def test_feedback_request_without_phone(self):
        assert plan_feedback_request(make_order(customer_phone=""), ORIGIN) is None

    def test_template_choice_gets_every_link(self):
        action = plan_manual_message(make_order(), ORIGIN, template="abandoned_cart_reminder", additional_info="10% off today")
        assert action.kind == NotificationKind.ABANDONED_CART.value
        assert action.body is None
        assert action.parameters["retryLink"] == f"{ORIGIN}/checkout/retry/O1"
        assert action.parameters["trackingLink"] == tracking_fallback_link(ORIGIN, "O1")
        assert action.parameters["additionalInfo"] == "10% off today"

    def test_custom_body(self):
        action = plan_manual_message(make_order(), ORIGIN, body="Hello {{customerName}}")
        assert action.kind == CUSTOM_MESSAGE
        assert action.body == "Hello {{customerName}}"


class TestDispatcherSending:
    """Envoi effectif en tâche de fond"""

    @pytest.mark.asyncio
    async def test_fallback_message_sent_and_logged(self, pb, whatsapp, dispatcher):
        order = make_order()
        task = dispatcher.dispatch(order, make_transition(PENDING, {"payment_status": "failed"}), ORIGIN)
        assert task is not None
        await dispatcher.wait_idle()

        assert len(whatsapp.sent) == 1
        assert whatsapp.sent[0]["phone"] == "+919998887776"
        assert "Payment Failed" in whatsapp.sent[0]["message"]
        assert f"{ORIGIN}/checkout/retry/O1" in whatsapp.sent[0]["message"]

        activities = list(pb.collections["whatsapp_activities"].values())
        assert len(activities) == 1
        assert activities[0]["status"] == "sent"
        assert activities[0]["template_name"] == "payment_failed"
        assert json.loads(activities[0]["message_content"])["message"] == whatsapp.sent[0]["message"]
        print("✅ PAYMENT_FAILED envoyé + activité journalisée")

    @pytest.mark.asyncio
    async def test_stored_template_is_used(self, pb, whatsapp, dispatcher):
        pb.seed("whatsapp_templates", {
            "name": "order_delivered",
            "content": "Hi {{customerName}}, #{{orderId}} arrived. {{feedbackLink}} {{unknown}}",
            "isActive": True,
        })
        transition = make_transition({"status": "shipped", "payment_status": "paid"}, {"status": "delivered"})
        dispatcher.dispatch(make_order(status="delivered"), transition, ORIGIN)
        await dispatcher.wait_idle()

        assert whatsapp.sent[0]["message"] == f"Hi Asha, #O1 arrived. {ORIGIN}/feedback/O1 {{{{unknown}}}}"

    @pytest.mark.asyncio
    async def test_inactive_template_falls_back(self, pb, whatsapp, dispatcher):
        pb.seed("whatsapp_templates", {"name": "out_for_delivery", "content": "custom", "isActive": False})
        transition = make_transition({"status": "shipped", "payment_status": "paid"}, {"status": "out_for_delivery"})
        dispatcher.dispatch(make_order(), transition, ORIGIN)
        await dispatcher.wait_idle()

        assert "Out for Delivery" in whatsapp.sent[0]["message"]

    @pytest.mark.asyncio
    async def test_no_phone_means_no_task(self, whatsapp, dispatcher):
        task = dispatcher.dispatch(
            make_order(customer_phone=""),
            make_transition(PENDING, {"status": "shipped", "payment_status": "paid"}),
            ORIGIN,
        )
        assert task is None
        await dispatcher.wait_idle()
        assert whatsapp.sent == []

    @pytest.mark.asyncio
    async def test_failed_send_is_logged_not_raised(self, pb):
        whatsapp = FakeWhatsApp(result=SendResult(success=False, message="WhatsApp API unreachable", status="failed"))
        dispatcher = NotificationDispatcher(whatsapp, templates=TemplateStore(pb), activity_client=pb)
        dispatcher.dispatch(make_order(), make_transition(PENDING, {"payment_status": "paid"}), ORIGIN)
        await dispatcher.wait_idle()

        activities = list(pb.collections["whatsapp_activities"].values())
        assert activities[0]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_sender_exception_is_swallowed(self, pb):
        whatsapp = FakeWhatsApp(error=RuntimeError("boom"))
        dispatcher = NotificationDispatcher(whatsapp, templates=TemplateStore(pb), activity_client=pb)
        task = dispatcher.dispatch(make_order(), make_transition(PENDING, {"payment_status": "paid"}), ORIGIN)
        await task
        assert task.exception() is None
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_email_sent_when_enabled(self, pb, whatsapp):
        email = FakeEmailSender()
        dispatcher = NotificationDispatcher(
            whatsapp, templates=TemplateStore(pb), activity_client=pb,
            email_sender=email, email_enabled=True,
        )
        order = make_order(customer_email="asha@example.com")
        dispatcher.dispatch(order, make_transition(PENDING, {"payment_status": "paid"}), ORIGIN)
        await dispatcher.wait_idle()

        assert len(email.sent) == 1
        assert email.sent[0]["to"] == "asha@example.com"
        assert email.sent[0]["subject"] == "Payment Received - Order #O1"
        assert email.sent[0]["template_vars"]["templateName"] == "payment_success"
        assert len(pb.collections["email_activities"]) == 1

    @pytest.mark.asyncio
    async def test_email_skipped_when_disabled_or_invalid(self, pb, whatsapp):
        email = FakeEmailSender()
        disabled = NotificationDispatcher(whatsapp, email_sender=email, email_enabled=False)
        enabled = NotificationDispatcher(whatsapp, email_sender=email, email_enabled=True)
        transition = make_transition(PENDING, {"payment_status": "paid"})

        disabled.dispatch(make_order(customer_email="asha@example.com"), transition, ORIGIN)
        enabled.dispatch(make_order(customer_email="not-an-email"), transition, ORIGIN)
        await disabled.wait_idle()
        await enabled.wait_idle()

        assert email.sent == []
        assert len(whatsapp.sent) == 2

    @pytest.mark.asyncio
    async def test_malformed_template_falls_back(self, pb, whatsapp, dispatcher):
        pb.seed("whatsapp_templates", {"name": "out_for_delivery", "content": {"text": "bad"}, "isActive": True})
        transition = make_transition({"status": "shipped", "payment_status": "paid"}, {"status": "out_for_delivery"})
        dispatcher.dispatch(make_order(), transition, ORIGIN)
        await dispatcher.wait_idle()

        assert len(whatsapp.sent) == 1
        assert "Out for Delivery" in whatsapp.sent[0]["message"]
        print("✅ template mal formé → message de secours")

    @pytest.mark.asyncio
    async def test_confirmation_loads_items_in_background(self, whatsapp, dispatcher):
        loaded = []

        async def load_items():
            loaded.append(True)
            return [{"name": "Tote Bag", "price": 499.0, "quantity": 1}]

        task = dispatcher.dispatch_order_created(make_order(), load_items)
        assert task is not None
        assert loaded == []
        await dispatcher.wait_idle()

        assert loaded == [True]
        assert "1x Tote Bag - ₹499" in whatsapp.sent[0]["message"]

    @pytest.mark.asyncio
    async def test_confirmation_sent_when_items_fail(self, whatsapp, dispatcher):
        async def load_items():
            raise RuntimeError("order_items unavailable")

        dispatcher.dispatch_order_created(make_order(), load_items)
        await dispatcher.wait_idle()

        assert len(whatsapp.sent) == 1
        assert "Order Confirmation" in whatsapp.sent[0]["message"]

    @pytest.mark.asyncio
    async def test_confirmation_without_phone_never_loads_items(self, whatsapp, dispatcher):
        async def load_items():
            raise AssertionError("items must not be loaded")

        assert dispatcher.dispatch_order_created(make_order(customer_phone=""), load_items) is None
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_deliver_custom_body_returns_result(self, pb, whatsapp, dispatcher):
        action = plan_manual_message(make_order(), ORIGIN, body="Hi {{customerName}}, order #{{orderId}}")
        result = await dispatcher.deliver(action)

        assert result.success is True
        assert whatsapp.sent[0]["message"] == "Hi Asha, order #O1"
        activities = list(pb.collections["whatsapp_activities"].values())
        assert activities[0]["template_name"] == CUSTOM_MESSAGE

    @pytest.mark.asyncio
    async def test_deliver_unknown_template_sends_nothing(self, whatsapp, dispatcher):
        action = plan_manual_message(make_order(), ORIGIN, template="no_such_template")
        assert await dispatcher.deliver(action) is None
        assert whatsapp.sent == []
