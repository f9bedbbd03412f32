"""Localized strings for reminder notifications."""

import config

MESSAGES = {
    "en": {
        "reminderAlertTitle": "Medication Reminder",
        "reminderAlertText": "Time to take your {drug}.",
    },
    "bn": {
        "reminderAlertTitle": "ঔষধের অনুস্মারক",
        "reminderAlertText": "আপনার {drug} নেওয়ার সময় হয়েছে।",
    },
}


def t(key: str, lang: str = "", **params) -> str:
    table = MESSAGES.get(lang or config.LANGUAGE, MESSAGES["en"])
    text = table.get(key) or MESSAGES["en"].get(key, key)
    for name, value in params.items():
        text = text.replace("{" + name + "}", str(value))
    return text
