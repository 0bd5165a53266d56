from typing import Optional


class AppError(Exception):
    """
    Base error cho toàn bộ service.
    Mang theo status_code kiểu HTTP để tầng API chuyển thành response.
    """

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, is_operational: bool = True):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.is_operational = is_operational


class RejectedInputError(AppError):
    """Input bị guardrail từ chối. Message đã an toàn để trả cho người dùng."""

    status_code = 400


class NotFoundError(AppError):
    """Conversation/document không tồn tại hoặc không thuộc về user."""

    status_code = 404


class ValidationFailureError(AppError):
    status_code = 400


class DependencyFailureError(AppError):
    """
    Lỗi từ dependency bên ngoài (embedding, vector store, LLM, MongoDB).
    `dependency` dùng cho log của operator, không trả nguyên văn cho người dùng.
    """

    status_code = 502

    def __init__(self, dependency: str, message: str):
        super().__init__(f"{dependency} failure: {message}")
        self.dependency = dependency
