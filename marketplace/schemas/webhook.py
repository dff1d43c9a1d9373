"""Pydantic v2 schemas for PayMongo webhook events.

Only the fields the escrow engine reads are modelled; everything else in the
event is ignored.
"""

from pydantic import BaseModel, ConfigDict, Field

CHECKOUT_SESSION_PAID = "checkout_session.payment.paid"
PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"


class _Loose(BaseModel):
    model_config = ConfigDict(extra="ignore")


class PaymentSource(_Loose):
    type: str | None = None


class ResourcePaymentAttributes(_Loose):
    status: str | None = None
    source: PaymentSource | None = None


class ResourcePayment(_Loose):
    id: str
    attributes: ResourcePaymentAttributes = Field(default_factory=ResourcePaymentAttributes)


class ResourceRef(_Loose):
    id: str


class ResourceAttributes(_Loose):
    status: str | None = None
    payment_intent: ResourceRef | None = None
    payments: list[ResourcePayment] = Field(default_factory=list)


class Resource(_Loose):
    id: str
    attributes: ResourceAttributes = Field(default_factory=ResourceAttributes)

    def paid_payment(self) -> ResourcePayment | None:
        return next((p for p in self.attributes.payments if p.attributes.status == "paid"), None)


class EventAttributes(_Loose):
    type: str
    livemode: bool = False
    data: Resource


class EventData(_Loose):
    id: str | None = None
    attributes: EventAttributes


class WebhookEvent(_Loose):
    data: EventData

    @property
    def type(self) -> str:
        return self.data.attributes.type

    @property
    def resource(self) -> Resource:
        return self.data.attributes.data


class WebhookAck(BaseModel):
    received: bool
