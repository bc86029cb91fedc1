#!/usr/bin/env python3
"""
Send sample HL7v2 and FHIR messages to a running integration API.

Usage:
    # Send every sample once with the given inbound API key
    python scripts/send_test_messages.py --api-key inbound-key

    # Only the HL7v2 samples, one every 5 seconds
    python scripts/send_test_messages.py --api-key inbound-key --only hl7 --interval 5
"""

import argparse
import json
import time
from datetime import datetime, timezone

import requests

from config import get_api_url


def _hl7(*segments: str) -> str:
    return "\r".join(segments)


def hl7_samples():
    now = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    msh = "MSH|^~\\&|TEST_EMR|TEST_FACILITY|LABFLOW|LAB|" + now + "||{type}|{control_id}|P|2.5.1"
    pid = "PID|1||PAT-1001^^^TEST_FACILITY^PI||Doe^Jane||19800102|F|||1 Main St^^Springfield^^62701||555-0100"
    return [
        ("ORM^O01", _hl7(
            msh.format(type="ORM^O01", control_id="ORM" + now),
            pid,
            "ORC|NW|ORD-1001|||||||" + now + "|||DR-SMITH",
            "OBR|1|ORD-1001||2345-7^Glucose^LN|S",
        )),
        ("ADT^A08", _hl7(
            msh.format(type="ADT^A08", control_id="ADT" + now),
            pid,
        )),
        ("QRY^R02", _hl7(
            msh.format(type="QRY^R02", control_id="QRY" + now),
            "QRD|" + now + "|R|I|Q-1001||||PAT-1001|RESULT_STATUS|ORD-1001",
        )),
    ]


def fhir_samples():
    return [
        ("Patient", {
            "resourceType": "Patient",
            "id": "PAT-1002",
            "name": [{"family": "Roe", "given": ["Richard"]}],
            "gender": "male",
            "birthDate": "1975-05-17",
        }),
        ("ServiceRequest", {
            "resourceType": "ServiceRequest",
            "identifier": [{"value": "ORD-1002"}],
            "status": "active",
            "intent": "order",
            "subject": {"reference": "Patient/PAT-1002"},
            "code": {"coding": [{"system": "http://loinc.org", "code": "718-7", "display": "Hemoglobin"}]},
        }),
        ("DiagnosticReport", {
            "resourceType": "DiagnosticReport",
            "id": "DR-1002",
            "status": "final",
            "basedOn": [{"reference": "ServiceRequest/ORD-1002"}],
            "subject": {"reference": "Patient/PAT-1002"},
            "code": {"coding": [{"code": "718-7", "display": "Hemoglobin"}]},
            "issued": datetime.now(timezone.utc).isoformat(),
        }),
    ]


def send(api_url: str, path: str, body: str, api_key: str, content_type: str) -> bool:
    """POST one message and print the response."""
    try:
        response = requests.post(
            f"{api_url}{path}",
            data=body.encode("utf-8"),
            headers={"x-api-key": api_key, "Content-Type": content_type},
            timeout=30,
        )
    except requests.exceptions.RequestException as e:
        print(f"Request failed: {e}")
        return False

    print(f"  {response.status_code}: {response.text[:300].replace(chr(13), ' | ')}")
    return response.status_code < 300


def health_check(api_url: str) -> bool:
    """Check if the integration API is available."""
    try:
        response = requests.get(f"{api_url}/health", timeout=5)
        if response.status_code == 200:
            print(f"Integration API healthy at {api_url}")
            return True
        else:
            print(f"Integration API unhealthy: {response.status_code}")
            return False
    except requests.exceptions.RequestException as e:
        print(f"Cannot reach integration API at {api_url}: {e}")
        return False


def main():
    parser = argparse.ArgumentParser(description="Send sample HL7v2 and FHIR messages to the integration API")

    parser.add_argument("--api-key", required=True, help="Inbound API key of an active integration")
    parser.add_argument(
        "--only",
        choices=["hl7", "fhir"],
        help="Send only one protocol's samples (default: both)"
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=0,
        help="Interval in seconds between messages (default: 0 - send all at once)"
    )

    args = parser.parse_args()
    api_url = get_api_url()

    if not health_check(api_url):
        print("\nAPI not available. Start it with: lab-integration-api")
        return

    messages = []
    if args.only in (None, "hl7"):
        messages += [(name, "/hl7", body, "text/plain") for name, body in hl7_samples()]
    if args.only in (None, "fhir"):
        messages += [(name, "/fhir", json.dumps(res), "application/fhir+json") for name, res in fhir_samples()]

    success_count = 0
    for i, (name, path, body, content_type) in enumerate(messages):
        print(f"Sending {name} to {path}")
        if send(api_url, path, body, args.api_key, content_type):
            success_count += 1

        if args.interval > 0 and i < len(messages) - 1:
            time.sleep(args.interval)

    print(f"\nSent {success_count}/{len(messages)} messages successfully")


if __name__ == "__main__":
    main()
