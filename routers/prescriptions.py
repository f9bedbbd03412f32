import base64
import io
from datetime import datetime
from typing import Optional, Tuple

from fastapi import APIRouter, Body, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from PIL import Image

from config import (
    DEFAULT_REMINDER_TIME,
    MAX_ATTACHMENT_SIZE,
    MAX_DOCTOR_LEN,
    MAX_DOSAGE_LEN,
    MAX_DRUG_NAME_LEN,
    _current_user_id,
)
from reminders import InvalidTimeFormat, parse_time_of_day

router = APIRouter()

_ALLOWED_ATTACHMENT_TYPES = {"application/pdf", "image/jpeg", "image/png", "image/webp"}
_PILLOW_FORMATS = {"image/jpeg": "JPEG", "image/png": "PNG", "image/webp": "WEBP"}


def _validate_drug(drug) -> Tuple[Optional[str], Optional[dict]]:
    if not isinstance(drug, dict):
        return ("Each drug must be an object", None)
    name = str(drug.get("name", "")).strip()
    dosage = str(drug.get("dosage", "")).strip()
    if not name:
        return ("Drug name is required", None)
    if len(name) > MAX_DRUG_NAME_LEN:
        return (f"Drug name must be {MAX_DRUG_NAME_LEN} characters or fewer", None)
    if len(dosage) > MAX_DOSAGE_LEN:
        return (f"Dosage must be {MAX_DOSAGE_LEN} characters or fewer", None)
    enabled = bool(drug.get("reminder_enabled", False))
    times = drug.get("reminder_times") or []
    if not isinstance(times, list):
        return ("Reminder times must be a list", None)
    if enabled and not times:
        times = [DEFAULT_REMINDER_TIME]
    cleaned = []
    for raw in times:
        try:
            at = parse_time_of_day(raw)
        except InvalidTimeFormat:
            return (f"Invalid reminder time for {name}: {raw!r}", None)
        value = at.strftime("%H:%M")
        if value not in cleaned:
            cleaned.append(value)
    return (None, {
        "name": name,
        "dosage": dosage,
        "reminder_enabled": enabled,
        "reminder_times": cleaned if enabled else [],
    })


def _detect_attachment_type(data: bytes) -> Optional[str]:
    if data.startswith(b"%PDF-"):
        return "application/pdf"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def _validate_attachment(file_data, file_type) -> Tuple[Optional[str], str, str]:
    """Attachment arrives base64 encoded; an empty body means no attachment."""
    file_data = str(file_data or "").strip()
    file_type = str(file_type or "").strip().lower()
    if not file_data:
        return (None, "", "")
    if file_type not in _ALLOWED_ATTACHMENT_TYPES:
        return ("Attachment must be a PDF, JPEG, PNG or WebP file", "", "")
    if len(file_data) > (MAX_ATTACHMENT_SIZE + 2) // 3 * 4:
        return (f"Attachment must be {MAX_ATTACHMENT_SIZE // (1024 * 1024)} MB or smaller", "", "")
    try:
        raw = base64.b64decode(file_data, validate=True)
    except ValueError:
        return ("Attachment is not valid base64", "", "")
    if len(raw) > MAX_ATTACHMENT_SIZE:
        return (f"Attachment must be {MAX_ATTACHMENT_SIZE // (1024 * 1024)} MB or smaller", "", "")
    if _detect_attachment_type(raw) != file_type:
        return ("Attachment content does not match its file type", "", "")
    if file_type in _PILLOW_FORMATS:
        # Re-encode images to drop EXIF and other metadata
        try:
            img = Image.open(io.BytesIO(raw))
            buf = io.BytesIO()
            img.save(buf, format=_PILLOW_FORMATS[file_type])
        except (OSError, ValueError):
            return ("Could not process image", "", "")
        file_data = base64.b64encode(buf.getvalue()).decode("ascii")
    return (None, file_data, file_type)


def _validate_prescription(payload: dict) -> Tuple[Optional[str], Optional[dict]]:
    doctor = str(payload.get("doctor", "")).strip()
    issue_date = str(payload.get("date", "")).strip()
    if not doctor:
        return ("Prescribing doctor is required", None)
    if len(doctor) > MAX_DOCTOR_LEN:
        return (f"Doctor must be {MAX_DOCTOR_LEN} characters or fewer", None)
    try:
        datetime.strptime(issue_date, "%Y-%m-%d")
    except ValueError:
        return ("Invalid date format", None)
    drugs = payload.get("drugs")
    if not isinstance(drugs, list) or not drugs:
        return ("At least one drug is required", None)
    cleaned = []
    for drug in drugs:
        error, item = _validate_drug(drug)
        if error:
            return (error, None)
        cleaned.append(item)
    error, file_data, file_type = _validate_attachment(payload.get("file_data"), payload.get("file_type"))
    if error:
        return (error, None)
    return (None, {
        "doctor": doctor,
        "date": issue_date,
        "drugs": cleaned,
        "file_data": file_data,
        "file_type": file_type,
    })


@router.get("/api/prescriptions")
async def api_prescriptions(request: Request):
    uid = _current_user_id.get()
    store = request.app.state.prescription_store
    prescriptions = await run_in_threadpool(store.list_prescriptions, uid)
    return JSONResponse({"prescriptions": prescriptions})


@router.post("/api/prescriptions")
async def api_prescriptions_create(request: Request, payload: dict = Body(...)):
    uid = _current_user_id.get()
    error, data = _validate_prescription(payload)
    if error:
        return JSONResponse({"ok": False, "error": error}, status_code=400)
    store = request.app.state.prescription_store
    prescription = await run_in_threadpool(
        store.add_prescription, uid, data["doctor"], data["date"], data["drugs"],
        file_data=data["file_data"], file_type=data["file_type"],
    )
    await request.app.state.scheduler.schedule_reminders()
    return JSONResponse({"ok": True, "prescription": prescription})


@router.post("/api/prescriptions/{rx_id}/delete")
async def api_prescriptions_delete(request: Request, rx_id: int):
    uid = _current_user_id.get()
    store = request.app.state.prescription_store
    deleted = await run_in_threadpool(store.delete_prescription, uid, rx_id)
    if not deleted:
        return JSONResponse({"ok": False, "error": "Prescription not found"}, status_code=404)
    await request.app.state.scheduler.schedule_reminders()
    return JSONResponse({"ok": True})
