"""Исключения конвейера распознавания."""


class LabelGrabberError(Exception):
    """Базовое исключение пакета."""


class DecodeError(LabelGrabberError):
    """Байты не являются поддерживаемым изображением (или размеры нулевые).

    Единственная ошибка, которая прерывает весь вызов распознавания.
    """


class EngineTimeout(LabelGrabberError):
    """Движок не уложился в отведённое время — трактуется как «нет результата»."""

    def __init__(self, engine: str, timeout_s: float):
        super().__init__(f"{engine}: превышено время ожидания {timeout_s:.1f} с")
        self.engine = engine
        self.timeout_s = timeout_s


class EngineUnavailable(LabelGrabberError):
    """Движок не поддерживается в текущем окружении (проверяется один раз)."""
