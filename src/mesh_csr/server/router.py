"""
证书签发服务的 FastAPI 路由定义。
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from .errors import AuthenticationError, AuthorizationError, IssuanceError
from .schemas import IstioCertificateRequest, IstioCertificateResponse
from .services import IssuanceService

router = APIRouter(prefix="/ca", tags=["Istio Certificate Service"])


def get_issuance_service(request: Request) -> IssuanceService:
    """从 app.state 获取生命周期中创建的签发服务。"""
    service = getattr(request.app.state, "issuance_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="签发服务尚未就绪")
    return service


@router.post("/create-certificate", response_model=IstioCertificateResponse)
async def create_certificate(
    req: IstioCertificateRequest,
    request: Request,
    service: IssuanceService = Depends(get_issuance_service),
) -> IstioCertificateResponse:
    """
    Sidecar 提交 CSR，请求签发工作负载证书。
    """
    try:
        issued = await service.issue(request, req.csr, req.validity_duration)
        return IstioCertificateResponse(cert_chain=issued.cert_chain())
    except AuthenticationError:
        raise HTTPException(status_code=401, detail="unauthenticated")
    except AuthorizationError:
        raise HTTPException(status_code=403, detail="permission denied")
    except IssuanceError as e:
        raise HTTPException(status_code=500, detail=f"证书签发失败: {str(e)}")
    except Exception as e:
        # 捕获所有未预期的错误并返回 500
        raise HTTPException(status_code=500, detail=f"内部服务器错误: {str(e)}")
