from __future__ import annotations

from chatpipe.core.config import get_settings


DEFAULT_LOCALE = "fr"

QUOTA_EXCEEDED_NOTICES: dict[str, str] = {
    "fr": (
        "⚠️ L'assistant a atteint sa limite d'utilisation pour le moment.\n"
        "Merci de contacter l'administrateur pour continuer à utiliser le service."
    ),
    "ar": (
        "⚠️ لقد بلغ المساعد الحدّ الأقصى للاستخدام في الوقت الحالي.\n"
        "يُرجى التواصل مع المسؤول لمواصلة استخدام الخدمة."
    ),
    "ar-ma": (
        "⚠️ المساعد وصل دابا للحدّ ديال الاستعمال.\n"
        "عافاك تواصل مع المسؤول باش تكمل استعمال الخدمة."
    ),
}

RATE_LIMIT_NOTICES: dict[str, str] = {
    "fr": "⚠️ Trop de messages en peu de temps. Merci de réessayer dans quelques instants.",
    "ar": "⚠️ تم إرسال رسائل كثيرة في وقت قصير. يُرجى المحاولة مرة أخرى بعد قليل.",
    "ar-ma": "⚠️ بزاف ديال الرسائل في وقت قصير. عافاك عاود بعد شوية.",
}


def _resolve_locale(locale: str | None) -> str:
    resolved = (locale or get_settings().notice_locale or DEFAULT_LOCALE).lower()
    return resolved if resolved in QUOTA_EXCEEDED_NOTICES else DEFAULT_LOCALE


def quota_exceeded_notice(locale: str | None = None) -> str:
    return QUOTA_EXCEEDED_NOTICES[_resolve_locale(locale)]


def rate_limit_notice(locale: str | None = None) -> str:
    return RATE_LIMIT_NOTICES[_resolve_locale(locale)]
