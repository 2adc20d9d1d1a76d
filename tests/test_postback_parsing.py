import json

import pytest

from checkout.exceptions import PostbackFormatError
from checkout.models import OrderStatus
from checkout.postback import (
    DelimitedParser,
    JsonBodyParser,
    NestedJsonFieldParser,
    Outcome,
    extract_postback,
    outcome_from_code,
    parse_payload,
)


def test_flat_json_body():
    """
    Test case 1: A flat JSON object is read by the JSON parser.
    """
    body = json.dumps({"Success": "Y", "RespText": "APPROVED", "XactID": 20231, "Postback.OrderID": "order-1"})

    result = parse_payload(body)

    assert result.parser == "json"
    assert result.fields["XactID"] == "20231"
    assert result.fields["Postback.OrderID"] == "order-1"


def test_semicolon_delimited_body_is_percent_decoded():
    """
    Test case 2: EPN's ``key=value;key=value`` form with URL-encoded values.
    """
    body = "Success=N;RespText=Insufficient%20Funds;XactID=TX-1001;Postback.OrderID=order-1"

    result = parse_payload(body)

    assert result.parser == "delimited"
    assert result.fields["RespText"] == "Insufficient Funds"
    assert result.fields["Success"] == "N"


def test_form_encoded_body():
    result = parse_payload("Success=Y&RespText=APPROVED+123456&XactID=TX-1001&Postback.OrderID=order-1")

    assert result.parser == "delimited"
    assert result.fields["RespText"] == "APPROVED 123456"


def test_comma_delimited_body():
    result = parse_payload("Success=Y, XactID=TX-1001, Postback.OrderID=order-1")

    assert result.fields == {"Success": "Y", "XactID": "TX-1001", "Postback.OrderID": "order-1"}


@pytest.mark.parametrize(
    "envelope",
    [
        {"data": {"Success": "Y", "XactID": "TX-1001", "Postback.OrderID": "order-1"}},
        {"payload": json.dumps({"Success": "Y", "XactID": "TX-1001", "Postback.OrderID": "order-1"})},
    ],
)
def test_postback_wrapped_in_envelope_field(envelope):
    """
    Test case 3: A postback nested in an envelope field, as an object or a JSON string.
    """
    result = parse_payload(json.dumps(envelope))

    assert result.parser == "nested_json"
    assert result.fields["XactID"] == "TX-1001"


@pytest.mark.parametrize("body", ["not a postback", "[1, 2, 3]", json.dumps({"hello": "world"})])
def test_unrecognized_body_lists_every_parser(body):
    """
    Test case 4: When every parser fails the error names each attempt.
    """
    with pytest.raises(PostbackFormatError) as exc_info:
        parse_payload(body)

    message = str(exc_info.value)
    for name in ("json", "delimited", "nested_json"):
        assert f"{name}:" in message
    assert exc_info.value.http_status == 500


def test_parsers_report_tagged_results():
    assert not JsonBodyParser().parse("a=b").ok
    assert DelimitedParser().parse('{"a": "b"}').error == "body is JSON"
    assert NestedJsonFieldParser().parse('{"data": "nope"}').error == "no envelope field with postback data"


@pytest.mark.parametrize(
    "code, outcome",
    [
        ("Y", Outcome.APPROVED),
        ("y ", Outcome.APPROVED),
        ("N", Outcome.DECLINED),
        ("U", Outcome.INDETERMINATE),
        ("X", Outcome.INDETERMINATE),
        ("", Outcome.INDETERMINATE),
        (None, Outcome.INDETERMINATE),
    ],
)
def test_outcome_codes(code, outcome):
    assert outcome_from_code(code) == outcome


def test_extract_postback_reads_canonical_fields():
    """
    Test case 5: Canonical fields are extracted and the secret is kept out of raw.
    """
    postback = extract_postback(
        {
            "Success": "Y",
            "RespText": "APPROVED",
            "XactID": "TX-1001",
            "AuthCode": "A1B2C3",
            "AVSResp": "Y",
            "CVV2Resp": "M",
            "Postback.OrderID": "order-1",
            "OrderID": "other",
            "Postback.RestrictKey": "pb-secret",
        }
    )

    assert postback.outcome == Outcome.APPROVED
    assert postback.status == OrderStatus.PAID
    assert postback.order_id == "order-1"
    assert postback.auth_code == "A1B2C3"
    assert postback.avs_result == "Y"
    assert postback.cvv_result == "M"
    assert postback.secret == "pb-secret"
    assert "Postback.RestrictKey" not in postback.raw
    assert "pb-secret" not in repr(postback)
    assert postback.missing_fields() == []


def test_extract_postback_defaults():
    """
    Test case 6: OrderID is the fallback and an empty RespText gets the default message.
    """
    postback = extract_postback({"Success": "N", "RespText": " ", "OrderID": "order-1"})

    assert postback.order_id == "order-1"
    assert postback.status == OrderStatus.FAILED
    assert postback.message == "Payment declined - please check your card details"
    assert postback.missing_fields() == ["XactID"]


def test_indeterminate_postback_stays_pending():
    postback = extract_postback({"Success": "U", "XactID": "TX-1"})

    assert postback.status == OrderStatus.PENDING
    assert postback.message == "Unable to process payment - please try again in a few moments"
    assert postback.missing_fields() == ["Postback.OrderID"]
