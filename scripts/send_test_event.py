#!/usr/bin/env python3
"""
Script to exercise a running alert service by hand.

Usage:
    # Send a sensor event (run twice within the dedup window to see dedup)
    python scripts/send_test_event.py send-event --patient-id <patient_id> --key motion-0800

    # Acknowledge or resolve an alert with a locally minted token
    python scripts/send_test_event.py acknowledge <alert_id> --caregiver-id <caregiver_id>
    python scripts/send_test_event.py resolve <alert_id> --kind false_alarm

    # Show history and delivery state
    python scripts/send_test_event.py show <alert_id>
"""

import asyncio
import json
from datetime import datetime, timezone

import httpx
import typer

from carewatch.core.config import settings
from carewatch.core.security import create_access_token
from carewatch.shared.constants import WEBHOOK_SECRET_HEADER

app = typer.Typer()

BASE_URL = "http://localhost:8000"


def _alerts_url(base_url: str) -> str:
    return f"{base_url}{settings.API_V1_STR}/alerts"


def _auth_headers(caregiver_id: str, roles: list[str]) -> dict[str, str]:
    token = create_access_token(caregiver_id, roles=roles)
    return {"Authorization": f"Bearer {token}"}


def _print_response(response: httpx.Response) -> None:
    if response.is_success:
        typer.echo(f"✅ {response.status_code}")
    else:
        typer.echo(f"❌ {response.status_code}", err=True)
    try:
        typer.echo(json.dumps(response.json(), indent=2))
    except ValueError:
        typer.echo(response.text)


@app.command()
def send_event(
    patient_id: str = typer.Option(..., help="Patient ID"),
    key: str = typer.Option("test-event", help="Source event key used for dedup"),
    source_type: str = typer.Option("sensor_inactivity", help="sensor_inactivity, sensor_webhook or manual"),
    severity: str = typer.Option(None, help="Override severity (info, warning, critical)"),
    message: str = typer.Option(None, help="Custom headline"),
    location: str = typer.Option(None, help="Location added to the payload"),
    base_url: str = typer.Option(BASE_URL, help="Service base URL"),
):
    """Post an inbound event to the ingestion webhook."""
    asyncio.run(_send_event(patient_id, key, source_type, severity, message, location, base_url))


async def _send_event(
    patient_id: str,
    key: str,
    source_type: str,
    severity: str | None,
    message: str | None,
    location: str | None,
    base_url: str,
) -> None:
    event = {
        "patientId": patient_id,
        "sourceType": source_type,
        "occurredAt": datetime.now(timezone.utc).isoformat(),
        "sourceEventKey": key,
        "payload": {"location": location} if location else {},
    }
    if severity:
        event["severity"] = severity
    if message:
        event["message"] = message

    headers = {}
    if settings.INGEST_WEBHOOK_SECRET:
        headers[WEBHOOK_SECRET_HEADER] = settings.INGEST_WEBHOOK_SECRET

    typer.echo(f"📡 Sending {source_type} event {key!r} for patient {patient_id}")
    async with httpx.AsyncClient() as client:
        response = await client.post(f"{_alerts_url(base_url)}/events", json=event, headers=headers)
    _print_response(response)


@app.command()
def acknowledge(
    alert_id: str,
    caregiver_id: str = typer.Option("caregiver-test", help="Principal ID put in the token"),
    note: str = typer.Option(None, help="Acknowledgement note"),
    base_url: str = typer.Option(BASE_URL, help="Service base URL"),
):
    """Acknowledge an alert."""
    asyncio.run(_post(alert_id, "acknowledge", {"note": note}, caregiver_id, base_url))


@app.command()
def resolve(
    alert_id: str,
    kind: str = typer.Option("confirmed", help="confirmed or false_alarm"),
    caregiver_id: str = typer.Option("caregiver-test", help="Principal ID put in the token"),
    note: str = typer.Option(None, help="Resolution note"),
    base_url: str = typer.Option(BASE_URL, help="Service base URL"),
):
    """Resolve an alert."""
    asyncio.run(_post(alert_id, "resolve", {"kind": kind, "note": note}, caregiver_id, base_url))


@app.command()
def resend(
    alert_id: str,
    caregiver_id: str = typer.Option("caregiver-test", help="Principal ID put in the token"),
    base_url: str = typer.Option(BASE_URL, help="Service base URL"),
):
    """Retry delivery for channels that have not succeeded yet."""
    asyncio.run(_post(alert_id, "resend", None, caregiver_id, base_url))


async def _post(
    alert_id: str, action: str, body: dict | None, caregiver_id: str, base_url: str
) -> None:
    headers = _auth_headers(caregiver_id, ["CAREGIVER"])
    async with httpx.AsyncClient() as client:
        response = await client.post(
            f"{_alerts_url(base_url)}/{alert_id}/{action}", json=body, headers=headers
        )
    _print_response(response)


@app.command()
def show(
    alert_id: str,
    caregiver_id: str = typer.Option("caregiver-test", help="Principal ID put in the token"),
    base_url: str = typer.Option(BASE_URL, help="Service base URL"),
):
    """Print an alert with its history and delivery attempts."""
    asyncio.run(_show(alert_id, caregiver_id, base_url))


async def _show(alert_id: str, caregiver_id: str, base_url: str) -> None:
    headers = _auth_headers(caregiver_id, ["CAREGIVER"])
    async with httpx.AsyncClient() as client:
        response = await client.get(f"{_alerts_url(base_url)}/{alert_id}", headers=headers)
    _print_response(response)


@app.command()
def test_connection(base_url: str = typer.Option(BASE_URL, help="Service base URL")):
    """Test connection to the API."""
    asyncio.run(_test_connection(base_url))


async def _test_connection(base_url: str) -> None:
    typer.echo(f"🔍 Testing connection to {base_url}...")
    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(f"{base_url}/health")
        except httpx.HTTPError as e:
            typer.echo(f"❌ Health check failed: {e}", err=True)
            raise typer.Exit(1)
    typer.echo(f"✅ Health check: {response.status_code}")


if __name__ == "__main__":
    app()
