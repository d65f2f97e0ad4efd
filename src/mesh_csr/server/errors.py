"""
签发流程中的错误类型。

路由层按照 ValueError -> 4xx、RuntimeError -> 5xx 的约定进行映射。
"""


class AuthenticationError(ValueError):
    """认证失败，或认证结果中没有任何身份。"""


class AuthorizationError(ValueError):
    """CSR 无法解析、携带了多余的身份字段，或身份与认证结果不一致。"""


class IssuanceError(RuntimeError):
    """CertificateRequest 失败、被拒绝或等待超时。"""
