from dataclasses import dataclass
from html import escape

from carewatch.modules.alerts.models import Alert, Severity, SourceType

_SOURCE_LABELS: dict[SourceType, str] = {
    SourceType.SENSOR_INACTIVITY: "Prolonged inactivity detected",
    SourceType.SENSOR_WEBHOOK: "Sensor event reported",
    SourceType.MANUAL: "Alert raised manually",
}

_SEVERITY_LABELS: dict[Severity, str] = {
    Severity.INFO: "Info",
    Severity.WARNING: "Warning",
    Severity.CRITICAL: "Critical",
}


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    text: str
    html: str


def _location(alert: Alert) -> str | None:
    value = alert.payload.get("location")
    return str(value) if value else None


def render_alert_message(alert: Alert, escalation: bool = False) -> RenderedMessage:
    """Build the channel-neutral notification for an alert.

    Escalations get an urgent subject and ask the reader to act now, since the
    first round of notifications went unanswered.
    """
    headline = alert.message or _SOURCE_LABELS[alert.source_type]
    severity = _SEVERITY_LABELS[alert.severity]
    occurred = alert.occurred_at.strftime("%Y-%m-%d %H:%M UTC")
    location = _location(alert)

    if escalation:
        subject = f"URGENT: No response to alert for patient {alert.patient_id}"
        lead = (
            "This alert has not been acknowledged yet. "
            "Please check on the patient immediately."
        )
    else:
        subject = f"[{severity}] {headline}"
        lead = "Please check on the patient and acknowledge this alert in the dashboard."

    lines = [
        headline,
        f"Patient: {alert.patient_id}",
        f"Severity: {severity}",
        f"Occurred at: {occurred}",
    ]
    if location:
        lines.append(f"Location: {location}")
    if alert.clock_skew_flagged:
        lines.append("Note: the sensor clock looks out of sync; check the reported time.")
    lines.extend(["", lead, f"Alert ID: {alert.id}"])
    text = "\n".join(lines)

    details = "".join(f"<li>{escape(line)}</li>" for line in lines[1:] if line and line != lead)
    html = (
        f"<h2>{escape(subject)}</h2>"
        f"<p><strong>{escape(headline)}</strong></p>"
        f"<ul>{details}</ul>"
        f"<p>{escape(lead)}</p>"
    )
    return RenderedMessage(subject=subject, text=text, html=html)
