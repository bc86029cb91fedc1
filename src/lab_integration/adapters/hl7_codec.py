"""
HL7v2 (ER7, pipe-delimited) codec.

Parses inbound ORM / ADT / QRY / ACK messages into the typed kinds of
lab_integration.domain.messages and builds the outbound ACK, ORU^R01,
ADT^A08 and RSP^K11 messages. Message structure, separators and
serialization are handled by hl7apy; everything here is pure and
synchronous.
"""

import logging
import re
import uuid
from datetime import date, datetime
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Union

from hl7apy import SUPPORTED_LIBRARIES
from hl7apy.consts import DEFAULT_ENCODING_CHARS, MLLP_ENCODING_CHARS, VALIDATION_LEVEL
from hl7apy.core import Message
from hl7apy.exceptions import HL7apyException, InvalidName
from hl7apy.parser import get_message_info, parse_message

from lab_integration.domain import messages
from lab_integration.domain.exceptions import MalformedMessageError
from lab_integration.domain.messages import (
    AckMessage,
    AdtMessage,
    HL7Message,
    MessageHeader,
    OrderData,
    OrderedTest,
    OrderMessage,
    PatientData,
    QueryData,
    QueryMessage,
    UnsupportedHL7Message,
)
from lab_integration.domain.model import COMPLETED, LabResult, PatientRecord, QueryResult

logger = logging.getLogger(__name__)

SEGMENT_SEPARATOR = "\r"
DEFAULT_VERSION = "2.5.1"

_MLLP_CHARS = MLLP_ENCODING_CHARS.SB + MLLP_ENCODING_CHARS.EB

_TYPE_CODE = re.compile(r"^[A-Z0-9]{3}$")

_SEX_TO_GENDER = {"M": "male", "F": "female", "O": "other", "A": "other", "U": "unknown", "N": "unknown"}
_GENDER_TO_SEX = {"male": "M", "female": "F", "other": "O", "unknown": "U"}

# HL7 table 0027
_PRIORITIES = {"S": "stat", "A": "asap", "R": "routine", "STAT": "stat", "ASAP": "asap", "ROUTINE": "routine"}

_RESULT_STATUS_CODES = {COMPLETED: "F", "preliminary": "P", "cancelled": "X", "corrected": "C"}

_ESCAPES = (("FIELD", "F"), ("COMPONENT", "S"), ("REPETITION", "R"), ("SUBCOMPONENT", "T"))


def encoding_chars_of(header: Optional[MessageHeader]) -> Dict[str, str]:
    """hl7apy encoding chars dict for the separators a header was read with."""
    if header is None:
        return dict(DEFAULT_ENCODING_CHARS)
    chars = header.encoding_characters or ""
    defaults = messages.DEFAULT_ENCODING_CHARACTERS
    chars = chars[:4] + defaults[len(chars[:4]):]
    return dict(
        DEFAULT_ENCODING_CHARS,
        FIELD=header.field_separator or messages.DEFAULT_FIELD_SEPARATOR,
        COMPONENT=chars[0],
        REPETITION=chars[1],
        ESCAPE=chars[2],
        SUBCOMPONENT=chars[3],
    )


def escape(value: Any, encoding_chars: Dict[str, str] = DEFAULT_ENCODING_CHARS) -> str:
    """Escape separator characters inside a single value; line breaks become spaces."""
    if value is None:
        return ""
    esc = encoding_chars["ESCAPE"]
    text = str(value).replace(esc, f"{esc}E{esc}")
    for key, code in _ESCAPES:
        text = text.replace(encoding_chars[key], f"{esc}{code}{esc}")
    return " ".join(text.splitlines())


def unescape(value: str, encoding_chars: Dict[str, str] = DEFAULT_ENCODING_CHARS) -> str:
    esc = encoding_chars["ESCAPE"]
    if not value or esc not in value:
        return value
    replacements = {code: encoding_chars[key] for key, code in _ESCAPES}
    replacements["E"] = esc
    pattern = re.compile(re.escape(esc) + "([FSRTE])" + re.escape(esc))
    return pattern.sub(lambda m: replacements[m.group(1)], value)


class Segment(NamedTuple):
    """
    Field text of one segment parsed by hl7apy, keyed by HL7 field number
    with one entry per repetition. MSH-1 and MSH-2 are not kept; the
    separators live in encoding_chars.
    """
    name: str
    fields: Dict[int, List[str]]
    encoding_chars: Dict[str, str]

    @classmethod
    def from_hl7apy(cls, segment, encoding_chars: Dict[str, str]) -> "Segment":
        fields = {}  # type: Dict[int, List[str]]
        for field in segment.children:
            prefix, _, number = (field.name or "").rpartition("_")
            if prefix != segment.name or not number.isdigit():
                continue
            index = int(number)
            if segment.name == "MSH" and index <= 2:
                continue
            fields.setdefault(index, []).append(field.to_er7(encoding_chars))
        return cls(segment.name, fields, encoding_chars)

    def raw(self, index: int) -> str:
        return self.encoding_chars["REPETITION"].join(self.fields.get(index, []))

    def repetitions(self, index: int) -> List[str]:
        return self.fields.get(index, [])

    def component(self, index: int, component: int = 1, repetition: int = 0) -> str:
        reps = self.repetitions(index)
        if repetition >= len(reps):
            return ""
        parts = reps[repetition].split(self.encoding_chars["COMPONENT"])
        if component > len(parts):
            return ""
        return unescape(parts[component - 1], self.encoding_chars).strip()

    def value(self, index: int) -> str:
        return self.component(index, 1)


# ---------- Parsing ----------

def _decode(raw: Union[str, bytes]) -> str:
    if isinstance(raw, bytes):
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            return raw.decode("latin-1")
    return raw or ""


def _normalize_hl7_text(text: str) -> List[str]:
    """Split on any line ending, dropping blank lines and MLLP framing."""
    normalized = text.strip(_MLLP_CHARS).replace("\r\n", "\n").replace("\r", "\n")
    return [ln.strip(_MLLP_CHARS) for ln in normalized.split("\n") if ln.strip(_MLLP_CHARS + " \t")]


def _msh_field(msh_line: str, number: int) -> Optional[str]:
    """Raw MSH field by HL7 number, read before hl7apy has accepted the message."""
    fields = msh_line.split(msh_line[3])
    return fields[number - 1].strip() if len(fields) >= number else None


def read_segments(raw: Union[str, bytes]) -> List[Segment]:
    """Parse a raw message with hl7apy; raises MalformedMessageError without a usable MSH."""
    lines = _normalize_hl7_text(_decode(raw))
    if not lines:
        raise MalformedMessageError("Empty HL7 message")

    start = next((i for i, ln in enumerate(lines) if ln.startswith("MSH")), None)
    if start is None:
        raise MalformedMessageError("Missing MSH segment")
    msh_line = lines[start]
    if len(msh_line) < 8:
        raise MalformedMessageError("MSH segment is truncated")
    if msh_line[3].isalnum() or msh_line[3].isspace():
        raise MalformedMessageError(f"Invalid field separator {msh_line[3]!r}")

    control_id = _msh_field(msh_line, 10) or None
    version = (_msh_field(msh_line, 12) or "").split(msh_line[4])[0].strip()
    if not version:
        fields = msh_line.split(msh_line[3])
        fields += [""] * (12 - len(fields))
        fields[11] = DEFAULT_VERSION
        lines[start] = msh_line[3].join(fields)
    elif version not in SUPPORTED_LIBRARIES:
        raise MalformedMessageError(f"Unsupported HL7 version {version!r}", control_id=control_id)

    text = SEGMENT_SEPARATOR.join(lines[start:]) + SEGMENT_SEPARATOR
    try:
        encoding_chars, _, _ = get_message_info(text)
        message = parse_message(text, validation_level=VALIDATION_LEVEL.TOLERANT, find_groups=False)
        return [Segment.from_hl7apy(segment, encoding_chars) for segment in message.children]
    except (HL7apyException, IndexError, ValueError) as e:
        raise MalformedMessageError(f"Unreadable HL7 message: {e}", control_id=control_id) from e


def segments(raw: Union[str, bytes]) -> List[List[str]]:
    """Return the unescaped fields of every segment, indexed by HL7 field number."""
    result = []
    for seg in read_segments(raw):
        size = max(seg.fields) if seg.fields else 0
        values = [unescape(seg.raw(i), seg.encoding_chars) for i in range(size + 1)]
        values[0] = seg.name
        if seg.name == "MSH":
            enc = seg.encoding_chars
            values[1:3] = [enc["FIELD"], enc["COMPONENT"] + enc["REPETITION"] + enc["ESCAPE"] + enc["SUBCOMPONENT"]]
        result.append(values)
    return result


def _first(segs: List[Segment], name: str) -> Optional[Segment]:
    return next((s for s in segs if s.name == name), None)


def _all(segs: List[Segment], name: str) -> List[Segment]:
    return [s for s in segs if s.name == name]


def _read_header(msh: Segment) -> MessageHeader:
    control_id = msh.value(10)
    message_type = msh.component(9, 1).upper()
    if not message_type:
        raise MalformedMessageError("MSH-9 message type is empty", control_id=control_id or None)
    if not _TYPE_CODE.match(message_type):
        raise MalformedMessageError(
            f"MSH-9 message type {message_type!r} is not a valid type code",
            control_id=control_id or None,
        )
    enc = msh.encoding_chars
    return MessageHeader(
        message_type=message_type,
        control_id=control_id,
        trigger_event=msh.component(9, 2).upper(),
        sending_application=msh.value(3),
        sending_facility=msh.value(4),
        receiving_application=msh.value(5),
        receiving_facility=msh.value(6),
        timestamp=msh.value(7),
        processing_id=msh.value(11) or "P",
        version=msh.value(12) or DEFAULT_VERSION,
        field_separator=enc["FIELD"],
        encoding_characters=enc["COMPONENT"] + enc["REPETITION"] + enc["ESCAPE"] + enc["SUBCOMPONENT"],
    )


def hl7_date_to_iso(value: str) -> str:
    """'19800102' or '198001021230' -> '1980-01-02'; other values pass through."""
    digits = (value or "")[:8]
    if len(digits) == 8 and digits.isdigit():
        return f"{digits[:4]}-{digits[4:6]}-{digits[6:8]}"
    return value or ""


def _read_patient(pid: Segment, control_id: str) -> PatientData:
    external_id = ""
    mrn = ""
    for i in range(len(pid.repetitions(3))):
        value = pid.component(3, 1, i)
        if not value:
            continue
        if not external_id:
            external_id = value
        if not mrn and pid.component(3, 5, i).upper() == "MR":
            mrn = value
    external_id = external_id or pid.value(2)
    if not external_id:
        raise MalformedMessageError("PID segment carries no patient identifier", control_id=control_id or None)

    address = {
        key: pid.component(11, position)
        for position, key in enumerate(
            ["street", "other", "city", "state", "postal_code", "country"], start=1
        )
        if pid.component(11, position)
    }

    return PatientData(
        external_id=external_id,
        mrn=mrn,
        first_name=pid.component(5, 2),
        last_name=pid.component(5, 1),
        date_of_birth=hl7_date_to_iso(pid.value(7)),
        gender=_SEX_TO_GENDER.get(pid.value(8).upper(), "unknown"),
        phone=pid.value(13),
        address=address,
    )


def _parse_order(header: MessageHeader, segs: List[Segment]) -> OrderMessage:
    pid = _first(segs, "PID")
    orc = _first(segs, "ORC")
    obrs = _all(segs, "OBR")
    if pid is None:
        raise MalformedMessageError("ORM message has no PID segment", control_id=header.control_id or None)
    if orc is None and not obrs:
        raise MalformedMessageError("ORM message has no ORC or OBR segment", control_id=header.control_id or None)

    placer_order_number = (orc.value(2) if orc else "") or (obrs[0].value(2) if obrs else "")
    if not placer_order_number:
        raise MalformedMessageError("ORM message has no placer order number", control_id=header.control_id or None)

    tests = [
        OrderedTest(code=obr.component(4, 1), name=obr.component(4, 2), coding_system=obr.component(4, 3))
        for obr in obrs
        if obr.component(4, 1)
    ]

    ordering_provider = orc.component(12, 1) if orc else ""
    if not ordering_provider:
        ordering_provider = next((obr.component(16, 1) for obr in obrs if obr.component(16, 1)), "")

    priority_code = next((obr.value(5) for obr in obrs if obr.value(5)), "")
    if not priority_code and orc:
        priority_code = orc.component(7, 6)

    notes = [obr.value(13) for obr in obrs if obr.value(13)]
    notes += [unescape(nte.raw(3), nte.encoding_chars) for nte in _all(segs, "NTE") if nte.raw(3)]

    order = OrderData(
        external_id=placer_order_number,
        patient=_read_patient(pid, header.control_id),
        ordering_provider=ordering_provider,
        tests=tests,
        priority=_PRIORITIES.get(priority_code.upper(), "routine"),
        clinical_info="; ".join(notes),
    )
    return OrderMessage(header=header, order=order)


def _parse_adt(header: MessageHeader, segs: List[Segment]) -> AdtMessage:
    pid = _first(segs, "PID")
    if pid is None:
        raise MalformedMessageError("ADT message has no PID segment", control_id=header.control_id or None)
    evn = _first(segs, "EVN")
    event_type = header.trigger_event or (evn.value(1).upper() if evn else "")
    return AdtMessage(header=header, patient=_read_patient(pid, header.control_id), event_type=event_type)


def _parse_query(header: MessageHeader, segs: List[Segment]) -> QueryMessage:
    qrd = _first(segs, "QRD")
    if qrd is None:
        raise MalformedMessageError("QRY message has no QRD segment", control_id=header.control_id or None)
    qrf = _first(segs, "QRF")

    date_range = None
    if qrf and (qrf.value(2) or qrf.value(3)):
        date_range = (hl7_date_to_iso(qrf.value(2)), hl7_date_to_iso(qrf.value(3)))

    query = QueryData(
        query_id=qrd.value(4) or header.control_id,
        query_type=qrd.component(9, 1).upper(),
        order_id=qrd.component(10, 1),
        patient_id=qrd.component(8, 1),
        date_range=date_range,
    )
    return QueryMessage(header=header, query=query)


def _parse_ack(header: MessageHeader, segs: List[Segment]) -> AckMessage:
    msa = _first(segs, "MSA")
    if msa is None:
        raise MalformedMessageError("ACK message has no MSA segment", control_id=header.control_id or None)
    return AckMessage(
        header=header,
        status=msa.value(1).upper(),
        control_id=msa.value(2),
        error_message=msa.value(3),
    )


_PAYLOAD_PARSERS = {
    "ORM": _parse_order,
    "ADT": _parse_adt,
    "QRY": _parse_query,
    "ACK": _parse_ack,
}  # type: Dict[str, Callable[[MessageHeader, List[Segment]], HL7Message]]


def parse_hl7(raw: Union[str, bytes]) -> HL7Message:
    """
    Parse a raw HL7v2 message.

    Returns UnsupportedHL7Message for a well-formed type code with no parser
    here; that is a routing decision, not a parse error.

    Raises:
        MalformedMessageError: no MSH, a version or structure hl7apy cannot
            read, bad MSH-9, or a segment required by the declared type is
            missing.
    """
    segs = read_segments(raw)
    header = _read_header(_first(segs, "MSH"))
    parser = _PAYLOAD_PARSERS.get(header.message_type)
    if parser is None:
        logger.debug(f"No payload parser for message type {header.message_type}")
        return UnsupportedHL7Message(header=header)
    return parser(header, segs)


# ---------- Building ----------

def new_control_id() -> str:
    return uuid.uuid4().hex[:20].upper()


def format_hl7_timestamp(value: Any = None) -> str:
    """Format a datetime, date or ISO string as YYYYMMDDHHMMSS (YYYYMMDD for dates)."""
    if value is None or value == "":
        value = datetime.now()
    if isinstance(value, datetime):
        return value.strftime("%Y%m%d%H%M%S")
    if isinstance(value, date):
        return value.strftime("%Y%m%d")
    text = str(value)
    try:
        if len(text) == 10:
            return date.fromisoformat(text).strftime("%Y%m%d")
        return datetime.fromisoformat(text.replace("Z", "+00:00")).strftime("%Y%m%d%H%M%S")
    except ValueError:
        return text


def _compose(encoding_chars: Dict[str, str], *parts: Any) -> str:
    """Join escaped components, dropping trailing empties."""
    values = [escape(p, encoding_chars) for p in parts]
    while values and not values[-1]:
        values.pop()
    return encoding_chars["COMPONENT"].join(values)


def _new_message(
    structure: str,
    control_id: str,
    message_type: str,
    sending_application: str = "",
    sending_facility: str = "",
    receiving_application: str = "",
    receiving_facility: str = "",
    processing_id: str = "P",
    version: str = DEFAULT_VERSION,
    timestamp: Any = None,
    encoding_chars: Optional[Dict[str, str]] = None,
) -> Message:
    """An hl7apy message with its MSH filled in; unknown structures fall back to a generic message."""
    if version not in SUPPORTED_LIBRARIES:
        version = DEFAULT_VERSION
    options = dict(version=version, validation_level=VALIDATION_LEVEL.TOLERANT, encoding_chars=encoding_chars)
    try:
        message = Message(structure, **options)
    except InvalidName:
        message = Message(**options)

    enc = encoding_chars or DEFAULT_ENCODING_CHARS
    msh = message.msh[0]
    _set(msh, 3, escape(sending_application, enc))
    _set(msh, 4, escape(sending_facility, enc))
    _set(msh, 5, escape(receiving_application, enc))
    _set(msh, 6, escape(receiving_facility, enc))
    _set(msh, 7, format_hl7_timestamp(timestamp))
    _set(msh, 9, message_type)
    _set(msh, 10, escape(control_id, enc))
    _set(msh, 11, processing_id or "P")
    return message


def _set(segment, number: int, *repetitions: str) -> None:
    """Assign already-escaped ER7 text to a field, one value per repetition; empties are skipped."""
    name = f"{segment.name}_{number}"
    for index, value in enumerate(v for v in repetitions if v):
        segment.children.set(name, value, index)


def _add_segment(message: Message, name: str, values: Dict[int, str]):
    segment = message.add_segment(name)
    for number, value in sorted(values.items()):
        _set(segment, number, value)
    return segment


def build_ack(
    message_id: str,
    status: str = "AA",
    error_message: str = "",
    original: Optional[MessageHeader] = None,
    sending_application: str = "",
    sending_facility: str = "",
) -> str:
    """
    Build an ACK for message_id. When the original header is known, sender
    and receiver are swapped and its separators, version and processing id
    are echoed.
    """
    if original is not None:
        enc = encoding_chars_of(original)
        message = _new_message(
            "ACK",
            new_control_id(),
            _compose(enc, "ACK", original.trigger_event, "ACK" if original.trigger_event else ""),
            sending_application=original.receiving_application or sending_application,
            sending_facility=original.receiving_facility or sending_facility,
            receiving_application=original.sending_application,
            receiving_facility=original.sending_facility,
            processing_id=original.processing_id,
            version=original.version,
            encoding_chars=enc,
        )
    else:
        enc = dict(DEFAULT_ENCODING_CHARS)
        message = _new_message(
            "ACK",
            new_control_id(),
            "ACK",
            sending_application=sending_application,
            sending_facility=sending_facility,
        )

    _add_segment(message, "MSA", {1: status, 2: escape(message_id, enc), 3: escape(error_message, enc)})
    return message.to_er7()


def _add_observations(message: Message, observations: List[Dict[str, Any]], enc: Dict[str, str]) -> None:
    for set_id, obs in enumerate(observations, start=1):
        value = obs.get("value", "")
        _add_segment(message, "OBX", {
            1: str(set_id),
            2: "NM" if _is_numeric(value) else "ST",
            3: _compose(enc, obs.get("code", ""), obs.get("display", "")),
            5: escape(value, enc),
            6: escape(obs.get("unit", ""), enc),
            7: escape(obs.get("reference_range", ""), enc),
            8: escape(obs.get("flag", ""), enc),
            11: escape(obs.get("status") or "F", enc),
            14: format_hl7_timestamp(obs["observed_at"]) if obs.get("observed_at") else "",
        })


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    try:
        float(str(value))
        return str(value).strip() != ""
    except ValueError:
        return False


def _add_result(
    message: Message, set_id: int, result: LabResult, enc: Dict[str, str], with_observations: bool = True
) -> None:
    completed_at = format_hl7_timestamp(result.completed_at) if result.completed_at else ""
    _add_segment(message, "ORC", {
        1: "RE",
        2: escape(result.order_id, enc),
        3: escape(result.id, enc),
        5: escape(result.status, enc),
    })
    if with_observations:
        _add_segment(message, "OBR", {
            1: str(set_id),
            2: escape(result.order_id, enc),
            3: escape(result.id, enc),
            4: _compose(enc, result.test_code, result.test_name),
            7: completed_at,
            22: completed_at,
            25: _RESULT_STATUS_CODES.get(result.status, "I"),
        })
        _add_observations(message, result.observations or [], enc)


def build_oru(
    result: LabResult,
    receiving_application: str = "",
    receiving_facility: str = "",
    sending_application: str = "",
    sending_facility: str = "",
    timestamp: Any = None,
) -> str:
    """Build an ORU^R01 unsolicited result message for a lab result."""
    enc = dict(DEFAULT_ENCODING_CHARS)
    message = _new_message(
        "ORU_R01",
        new_control_id(),
        "ORU^R01^ORU_R01",
        sending_application=sending_application,
        sending_facility=sending_facility,
        receiving_application=receiving_application,
        receiving_facility=receiving_facility,
        timestamp=timestamp,
    )
    _add_segment(message, "PID", {1: "1", 3: escape(result.patient_id, enc)})
    _add_result(message, 1, result, enc)
    return message.to_er7()


def build_adt(
    patient: PatientRecord,
    event_type: str = "A08",
    receiving_application: str = "",
    receiving_facility: str = "",
    sending_application: str = "",
    sending_facility: str = "",
    timestamp: Any = None,
) -> str:
    """Build an ADT message (A08, update patient information by default)."""
    enc = dict(DEFAULT_ENCODING_CHARS)
    message = _new_message(
        "ADT_A01",
        new_control_id(),
        _compose(enc, "ADT", event_type, "ADT_A01"),
        sending_application=sending_application,
        sending_facility=sending_facility,
        receiving_application=receiving_application,
        receiving_facility=receiving_facility,
        timestamp=timestamp,
    )
    _add_segment(message, "EVN", {1: escape(event_type, enc), 2: format_hl7_timestamp(timestamp)})

    address = patient.address or {}
    pid = _add_segment(message, "PID", {
        1: "1",
        5: _compose(enc, patient.last_name, patient.first_name),
        7: format_hl7_timestamp(patient.date_of_birth) if patient.date_of_birth else "",
        8: _GENDER_TO_SEX.get(patient.gender or "unknown", "U"),
        11: _compose(
            enc,
            address.get("street", ""),
            address.get("other", ""),
            address.get("city", ""),
            address.get("state", ""),
            address.get("postal_code", ""),
            address.get("country", ""),
        ),
        13: escape(patient.phone, enc),
    })
    _set(
        pid,
        3,
        _compose(enc, patient.external_id, "", "", "", "PI"),
        _compose(enc, patient.mrn, "", "", "", "MR") if patient.mrn else "",
    )
    _add_segment(message, "PV1", {1: "1", 2: "N"})
    return message.to_er7()


def build_rsp(
    query_result: QueryResult,
    original: MessageHeader,
    sending_application: str = "",
    sending_facility: str = "",
) -> str:
    """Build an RSP^K11 answering a QRY; QAK-2 is NF when nothing matched."""
    enc = encoding_chars_of(original)
    message = _new_message(
        "RSP_K11",
        new_control_id(),
        _compose(enc, "RSP", "K11", "RSP_K11"),
        sending_application=original.receiving_application or sending_application,
        sending_facility=original.receiving_facility or sending_facility,
        receiving_application=original.sending_application,
        receiving_facility=original.sending_facility,
        processing_id=original.processing_id,
        version=original.version,
        encoding_chars=enc,
    )
    _add_segment(message, "MSA", {1: "AA", 2: escape(original.control_id, enc)})
    _add_segment(message, "QAK", {
        1: escape(query_result.query_id, enc),
        2: "OK" if query_result.results else "NF",
        3: escape(query_result.query_type, enc),
    })
    with_observations = query_result.query_type != "RESULT_STATUS"
    for set_id, result in enumerate(query_result.results, start=1):
        _add_result(message, set_id, result, enc, with_observations=with_observations)
    return message.to_er7()


_BUILDERS = {
    "ACK": build_ack,
    "ORU": build_oru,
    "ADT": build_adt,
    "RSP": build_rsp,
}  # type: Dict[str, Callable[..., str]]


def build_hl7(kind: str, **fields) -> str:
    """Build an outbound message of the given kind (ACK, ORU, ADT or RSP)."""
    try:
        builder = _BUILDERS[kind.upper()]
    except KeyError:
        raise ValueError(f"Cannot build HL7 message of kind {kind!r}") from None
    return builder(**fields)
