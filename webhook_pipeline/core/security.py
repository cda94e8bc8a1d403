"""Проверка токена для операционных эндпоинтов.

Подпись входящих событий провайдера здесь не проверяется: это делает
коллаборатор выше по потоку, до того как событие попадает в пайплайн.
"""

from __future__ import annotations

import hmac

from webhook_pipeline.core.config import get_settings


def verify_ops_token(provided: str | None) -> bool:
    """Сравнить токен из запроса с `OPS_API_TOKEN` за константное время.

    Returns
    -------
    bool
        True, если токен совпал.
    """

    if not provided:
        return False
    expected = get_settings().ops_api_token.get_secret_value()
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
