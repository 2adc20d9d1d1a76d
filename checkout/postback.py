"""Postback Ingestor.

The processor reports each authorization outcome by calling back the
``PostbackURL`` given at submit time. Delivery is at-least-once and unordered,
so ingestion is idempotent: an order leaves ``pending`` once and is never
touched again.

Only the processor's canonical field names are read::

    Success               outcome code: Y approved, N declined, U indeterminate
    RespText              free-text response
    XactID                processor transaction id (required)
    Postback.OrderID      order id (required; falls back to OrderID)
    AuthCode, AVSResp, CVV2Resp
    Postback.RestrictKey  shared secret echoed back from the charge request
"""

import enum
import hmac
import json
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol, Sequence
from urllib.parse import unquote, unquote_plus

import structlog

from checkout.exceptions import AuthenticationError, ConfigurationError, MissingFieldsError, PostbackFormatError
from checkout.models import OrderStatus
from checkout.sanitize import sanitize
from checkout.schemas import PostbackResponse
from checkout.store import OrderStore, PaymentAttempt

logger = structlog.get_logger(component="postback")

SECRET_FIELD = "Postback.RestrictKey"
RECOGNIZED_FIELDS = (
    "Success",
    "RespText",
    "XactID",
    "AuthCode",
    "AVSResp",
    "CVV2Resp",
    "Postback.OrderID",
    "OrderID",
    SECRET_FIELD,
)
ENVELOPE_FIELDS = ("data", "payload", "body", "postback")
REQUEST_ID_HEADERS = ("x-request-id", "x-nf-request-id", "x-amzn-requestid")


class Outcome(enum.Enum):
    APPROVED = "approved"
    DECLINED = "declined"
    INDETERMINATE = "indeterminate"


OUTCOME_CODES = {
    "Y": Outcome.APPROVED,
    "N": Outcome.DECLINED,
    "U": Outcome.INDETERMINATE,
}

OUTCOME_STATUS = {
    Outcome.APPROVED: OrderStatus.PAID,
    Outcome.DECLINED: OrderStatus.FAILED,
    Outcome.INDETERMINATE: OrderStatus.PENDING,
}

DEFAULT_MESSAGES = {
    Outcome.APPROVED: "Payment approved",
    Outcome.DECLINED: "Payment declined - please check your card details",
    Outcome.INDETERMINATE: "Unable to process payment - please try again in a few moments",
}

STATUS_OUTCOME = {status: outcome for outcome, status in OUTCOME_STATUS.items()}


def outcome_from_code(code: Optional[str]) -> Outcome:
    if code is None or not code.strip():
        return Outcome.INDETERMINATE
    outcome = OUTCOME_CODES.get(code.strip().upper())
    if outcome is None:
        logger.warning("unknown_outcome_code", code=code)
        return Outcome.INDETERMINATE
    return outcome


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParseResult:
    parser: str
    fields: Optional[dict[str, str]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.fields is not None


class PostbackParser(Protocol):
    name: str

    def parse(self, body: str) -> ParseResult: ...


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def _flatten(data: dict) -> dict[str, str]:
    return {str(key): _stringify(value) for key, value in data.items() if value is not None}


def _has_postback_fields(fields: dict[str, str]) -> bool:
    return any(name in fields for name in RECOGNIZED_FIELDS)


class JsonBodyParser:
    name = "json"

    def parse(self, body: str) -> ParseResult:
        try:
            data = json.loads(body)
        except ValueError as e:
            return ParseResult(self.name, error=f"invalid JSON: {e}")
        if not isinstance(data, dict):
            return ParseResult(self.name, error="JSON body is not an object")
        fields = _flatten(data)
        if not _has_postback_fields(fields):
            return ParseResult(self.name, error="no postback fields at top level")
        return ParseResult(self.name, fields=fields)


class DelimitedParser:
    """``key=value`` pairs split on ``;``, ``&`` or ``,`` (first one present wins)."""

    name = "delimited"

    def parse(self, body: str) -> ParseResult:
        text = body.strip()
        if text.startswith(("{", "[")):
            return ParseResult(self.name, error="body is JSON")
        if ";" in text:
            separator = ";"
        elif "&" in text:
            separator = "&"
        else:
            separator = ","
        decode = unquote_plus if separator == "&" else unquote

        fields = {}
        for pair in text.split(separator):
            key, eq, value = pair.partition("=")
            key = decode(key.strip())
            if not eq or not key:
                continue
            fields[key] = decode(value.strip())
        if not fields:
            return ParseResult(self.name, error="no key=value pairs")
        return ParseResult(self.name, fields=fields)


class NestedJsonFieldParser:
    """A JSON object carrying the real postback in an envelope field."""

    name = "nested_json"

    def parse(self, body: str) -> ParseResult:
        try:
            data = json.loads(body)
        except ValueError as e:
            return ParseResult(self.name, error=f"invalid JSON: {e}")
        if not isinstance(data, dict):
            return ParseResult(self.name, error="JSON body is not an object")
        for key in ENVELOPE_FIELDS:
            inner = data.get(key)
            if isinstance(inner, str):
                try:
                    inner = json.loads(inner)
                except ValueError:
                    continue
            if isinstance(inner, dict):
                fields = _flatten(inner)
                if _has_postback_fields(fields):
                    return ParseResult(self.name, fields=fields)
        return ParseResult(self.name, error="no envelope field with postback data")


DEFAULT_PARSERS: tuple[PostbackParser, ...] = (JsonBodyParser(), DelimitedParser(), NestedJsonFieldParser())


def parse_payload(body: str, parsers: Sequence[PostbackParser] = DEFAULT_PARSERS) -> ParseResult:
    """Try each parser in order; the first success wins."""
    failures = []
    for parser in parsers:
        result = parser.parse(body)
        if result.ok:
            return result
        failures.append(f"{result.parser}: {result.error}")
    raise PostbackFormatError("Unrecognized postback format (" + "; ".join(failures) + ")")


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Postback:
    outcome: Outcome
    outcome_code: Optional[str] = None
    response_text: Optional[str] = None
    transaction_id: Optional[str] = None
    order_id: Optional[str] = None
    auth_code: Optional[str] = None
    avs_result: Optional[str] = None
    cvv_result: Optional[str] = None
    secret: Optional[str] = field(default=None, repr=False)
    raw: dict[str, str] = field(default_factory=dict)

    @property
    def status(self) -> OrderStatus:
        return OUTCOME_STATUS[self.outcome]

    @property
    def message(self) -> str:
        return self.response_text or DEFAULT_MESSAGES[self.outcome]

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.transaction_id:
            missing.append("XactID")
        if not self.order_id:
            missing.append("Postback.OrderID")
        return missing

    def attempt(self) -> PaymentAttempt:
        return PaymentAttempt(
            transaction_id=self.transaction_id,
            auth_code=self.auth_code,
            response_text=self.response_text,
            avs_result=self.avs_result,
            cvv_result=self.cvv_result,
            raw=self.raw,
        )


def extract_postback(fields: Mapping[str, str]) -> Postback:
    def value(*names: str) -> Optional[str]:
        for name in names:
            found = (fields.get(name) or "").strip()
            if found:
                return found
        return None

    code = value("Success")
    return Postback(
        outcome=outcome_from_code(code),
        outcome_code=code,
        response_text=value("RespText"),
        transaction_id=value("XactID"),
        order_id=value("Postback.OrderID", "OrderID"),
        auth_code=value("AuthCode"),
        avs_result=value("AVSResp"),
        cvv_result=value("CVV2Resp"),
        secret=value(SECRET_FIELD),
        raw=sanitize(dict(fields)),
    )


# ---------------------------------------------------------------------------
# Ingestor
# ---------------------------------------------------------------------------


class PostbackIngestor:
    def __init__(
        self,
        store: OrderStore,
        secret: Optional[str],
        relaxed: bool = True,
        publisher=None,
        parsers: Sequence[PostbackParser] = DEFAULT_PARSERS,
    ):
        self._store = store
        self._secret = secret
        self._relaxed = relaxed
        self._publisher = publisher
        self._parsers = parsers

    def authenticate(self, postback: Postback) -> bool:
        """Return whether the postback is trusted; raise if it must be rejected."""
        if postback.secret is None:
            if not self._relaxed:
                raise AuthenticationError("Postback secret missing")
            logger.warning(
                "postback_secret_missing",
                order_id=postback.order_id,
                transaction_id=postback.transaction_id,
                trusted=False,
            )
            return False
        if not hmac.compare_digest(postback.secret.encode(), self._secret.encode()):
            logger.error(
                "postback_secret_mismatch",
                order_id=postback.order_id,
                transaction_id=postback.transaction_id,
                security_event=True,
            )
            raise AuthenticationError("Postback secret mismatch")
        return True

    async def ingest(self, raw_payload: bytes | str, headers: Optional[Mapping[str, str]] = None) -> PostbackResponse:
        if not self._secret:
            raise ConfigurationError("Postback secret is not configured")

        headers = {k.lower(): v for k, v in (headers or {}).items()}
        request_id = next((headers[h] for h in REQUEST_ID_HEADERS if h in headers), None)
        log = logger.bind(request_id=request_id)

        if isinstance(raw_payload, bytes):
            try:
                raw_payload = raw_payload.decode("utf-8")
            except UnicodeDecodeError as e:
                raise PostbackFormatError("Postback body is not UTF-8") from e
        if not raw_payload.strip():
            raise PostbackFormatError("Missing request body")

        parsed = parse_payload(raw_payload, self._parsers)
        postback = extract_postback(parsed.fields)
        log.info(
            "postback_received",
            parser=parsed.parser,
            content_type=headers.get("content-type"),
            fields=postback.raw,
        )

        trusted = self.authenticate(postback)

        missing = postback.missing_fields()
        if missing:
            log.error("postback_missing_fields", missing=missing, fields=postback.raw)
            raise MissingFieldsError(missing)

        recorded = await self._store.record_outcome(
            postback.order_id,
            postback.status,
            postback.attempt(),
            outcome=postback.outcome.value,
            trusted=trusted,
        )
        snapshot = recorded.snapshot

        if recorded.duplicate:
            log.info(
                "postback_duplicate",
                order_id=postback.order_id,
                transaction_id=postback.transaction_id,
                outcome=postback.outcome.value,
                current_status=snapshot.status.value,
            )
        else:
            log.info(
                "postback_processed",
                order_id=postback.order_id,
                transaction_id=postback.transaction_id,
                outcome=postback.outcome.value,
                status=snapshot.status.value,
                applied=recorded.applied,
                trusted=trusted,
            )

        if recorded.applied and self._publisher is not None:
            try:
                await self._publisher.publish_status(snapshot)
            except Exception as e:
                log.error("status_publish_failed", order_id=snapshot.order_id, error=str(e))

        if recorded.duplicate:
            # answer with what the order already holds, not the late postback
            message = snapshot.response_text or DEFAULT_MESSAGES[STATUS_OUTCOME[snapshot.status]]
            transaction_id, auth_code = snapshot.transaction_id, snapshot.auth_code
        else:
            message = postback.message
            transaction_id, auth_code = postback.transaction_id, postback.auth_code

        return PostbackResponse(
            success=snapshot.status == OrderStatus.PAID,
            status=snapshot.status.value,
            message=message,
            transaction_id=transaction_id,
            auth_code=auth_code,
            order_id=postback.order_id,
            trusted=trusted,
            duplicate=recorded.duplicate,
        )
