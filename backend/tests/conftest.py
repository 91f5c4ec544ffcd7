"""
Fixtures communes: faux PocketBase en mémoire, faux senders.
"""

import re
import sys
import uuid
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from models import SendResult
from services.pocketbase import RecordNotFoundError
from services.message_templates import TemplateStore
from services.notification_dispatcher import NotificationDispatcher
from services.order_gateway import OrderGateway


FILTER_CLAUSE = re.compile(r'(\w+)\s*=\s*"((?:[^"\\]|\\.)*)"')
ADMIN_TOKEN = "admin-token"


def _unquote(value):
    return re.sub(r"\\(.)", r"\1", value)


class FakePocketBase:
    """Même interface que PocketBaseClient, stockage en mémoire"""

    def __init__(self):
        self.collections = {}
        self.calls = []
        self.fail_on = {}  # (method, collection) -> exception
        self.filters = []
        self.admin_tokens = {ADMIN_TOKEN: {"id": "admin1", "email": "admin@konipai.in"}}
        self.closed = False

    def seed(self, collection, record):
        record = dict(record)
        record.setdefault("id", uuid.uuid4().hex[:15])
        record.setdefault("created", "2026-01-15 10:00:00.000Z")
        self.collections.setdefault(collection, {})[record["id"]] = record
        return record

    def _check(self, method, collection):
        self.calls.append((method, collection))
        error = self.fail_on.get((method, collection))
        if error:
            raise error

    def _records(self, collection):
        return self.collections.setdefault(collection, {})

    async def get(self, collection, record_id, expand=None):
        self._check("get", collection)
        record = self._records(collection).get(record_id)
        if record is None:
            raise RecordNotFoundError(f"Record not found: {record_id}", status=404)
        return dict(record)

    async def update(self, collection, record_id, patch):
        self._check("update", collection)
        records = self._records(collection)
        if record_id not in records:
            raise RecordNotFoundError(f"Record not found: {record_id}", status=404)
        records[record_id].update(patch)
        return dict(records[record_id])

    async def create(self, collection, data):
        self._check("create", collection)
        return dict(self.seed(collection, data))

    async def delete(self, collection, record_id):
        self._check("delete", collection)
        if self._records(collection).pop(record_id, None) is None:
            raise RecordNotFoundError(f"Record not found: {record_id}", status=404)

    def _query(self, collection, filter=None, sort=None):
        self.filters.append(filter)
        items = [dict(r) for r in self._records(collection).values()]
        for field, value in FILTER_CLAUSE.findall(filter or ""):
            items = [r for r in items if str(r.get(field, "")) == _unquote(value)]
        if sort:
            key = sort.lstrip("-")
            items.sort(key=lambda r: r.get(key) or "", reverse=sort.startswith("-"))
        return items

    async def list(self, collection, page=1, per_page=30, filter=None, sort=None, expand=None):
        self._check("list", collection)
        items = self._query(collection, filter, sort)
        start = (page - 1) * per_page
        return {
            "page": page,
            "perPage": per_page,
            "totalItems": len(items),
            "totalPages": max(1, -(-len(items) // per_page)),
            "items": items[start:start + per_page],
        }

    async def get_full_list(self, collection, filter=None, sort=None, expand=None):
        self._check("get_full_list", collection)
        return self._query(collection, filter, sort)

    async def verify_admin_token(self, token):
        self._check("verify_admin_token", "_admins")
        return self.admin_tokens.get(token)

    async def close(self):
        self.closed = True


class FakeWhatsApp:
    def __init__(self, result=None, error=None):
        self.sent = []
        self.closed = False
        self.result = result or SendResult(success=True, message="Message sent", message_id="wamid-1", status="sent")
        self.error = error

    async def send_message(self, phone, message, variables=None):
        self.sent.append({"phone": phone, "message": message, "variables": variables})
        if self.error:
            raise self.error
        return self.result

    async def check_status(self):
        return SendResult(success=True, message="connected", status="connected")

    async def close(self):
        self.closed = True


class FakeEmailSender:
    def __init__(self):
        self.sent = []
        self.closed = False

    async def send(self, to, subject, body, template_vars=None):
        self.sent.append({"to": to, "subject": subject, "body": body, "template_vars": template_vars})
        return SendResult(success=True, message="Email sent", status="sent")

    async def close(self):
        self.closed = True


class BlockingWhatsApp(FakeWhatsApp):
    """send_message reste bloqué tant que `gate` (asyncio.Event) n'est pas levé"""

    def __init__(self, gate, **kwargs):
        super().__init__(**kwargs)
        self.gate = gate
        self.completed = []

    async def send_message(self, phone, message, variables=None):
        self.sent.append({"phone": phone, "message": message, "variables": variables})
        await self.gate.wait()
        self.completed.append(phone)
        return self.result


@pytest.fixture
def pb():
    return FakePocketBase()


@pytest.fixture
def whatsapp():
    return FakeWhatsApp()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def dispatcher(pb, whatsapp):
    return NotificationDispatcher(whatsapp, templates=TemplateStore(pb), activity_client=pb)


@pytest.fixture
def gateway(pb, dispatcher):
    return OrderGateway(pb, dispatcher)


@pytest.fixture
def order_o1(pb):
    return pb.seed("orders", {
        "id": "O1",
        "status": "pending",
        "payment_status": "pending",
        "customer_name": "Asha",
        "customer_phone": "+919998887776",
        "customer_email": "asha@example.com",
        "total": 1499,
        "total_amount": 1499,
    })


def kinds(actions):
    """Types des actions planifiées, dans l'ordre"""
    return [a.kind for a in actions]

