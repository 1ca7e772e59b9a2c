from fastapi import APIRouter, HTTPException
from kubernetes.client.rest import ApiException

from kubeboot.config import get_context
from kubeboot.errors import PrerequisiteError
from kubeboot.modules import verify

router = APIRouter()


@router.get("/verify")
def verify_cluster():
    """Fresh cluster report; nothing is cached between calls."""
    try:
        report = verify.verify_cluster(get_context())
    except PrerequisiteError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except ApiException as e:
        raise HTTPException(status_code=502, detail=f"Kubernetes API error: {e.status} {e.reason}")
    return report.to_dict()
