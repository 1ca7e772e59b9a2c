from fastapi import APIRouter

from kubeboot.config import get_context
from kubeboot.state import NodeStateStore

router = APIRouter()


@router.get("/state")
def node_state():
    return NodeStateStore(get_context().paths.state_file).load()
