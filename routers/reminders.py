from fastapi import APIRouter, Body, Request
from fastapi.responses import JSONResponse

router = APIRouter()


def _scheduler(request: Request):
    return request.app.state.scheduler


def _alert_payload(scheduler):
    alert = scheduler.active_in_app_alert
    return alert.as_dict() if alert else None


@router.get("/api/reminders")
def api_reminders(request: Request):
    scheduler = _scheduler(request)
    return JSONResponse({
        "permission_status": scheduler.permission_status,
        "active_in_app_alert": _alert_payload(scheduler),
        "timers": [tm.as_dict() for tm in scheduler.timers],
    })


@router.post("/api/reminders/permission")
async def api_reminders_permission(request: Request, payload: dict = Body(default={})):
    allow = payload.get("allow", True)
    if not isinstance(allow, bool):
        return JSONResponse({"ok": False, "error": "allow must be true or false"}, status_code=400)
    status = await _scheduler(request).request_permission(allow)
    return JSONResponse({"ok": True, "permission_status": status})


@router.post("/api/reminders/schedule")
async def api_reminders_schedule(request: Request):
    scheduler = _scheduler(request)
    await scheduler.schedule_reminders()
    return JSONResponse({"ok": True, "timers": [tm.as_dict() for tm in scheduler.timers]})


@router.get("/api/reminders/alert")
def api_reminders_alert(request: Request):
    return JSONResponse({"active_in_app_alert": _alert_payload(_scheduler(request))})


@router.post("/api/reminders/alert/dismiss")
def api_reminders_alert_dismiss(request: Request):
    _scheduler(request).dismiss_in_app_alert()
    return JSONResponse({"ok": True})
