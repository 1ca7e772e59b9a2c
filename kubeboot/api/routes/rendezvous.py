from fastapi import APIRouter

from kubeboot.config import get_context
from kubeboot.errors import MalformedHandoffError
from kubeboot.models import JoinCredential
from kubeboot.rendezvous import FileRendezvousChannel

router = APIRouter()


@router.get("/rendezvous")
def rendezvous_status():
    """Whether a join command is published. The token itself is never returned."""
    ctx = get_context()
    channel = FileRendezvousChannel(ctx.rendezvous.mount_path, ctx.rendezvous.directory)
    if not channel.available():
        return {"available": False, "published": False}

    publication = channel.try_read()
    if publication is None:
        return {"available": True, "published": False}

    try:
        endpoint = JoinCredential.parse(publication.command).endpoint
        valid = True
    except MalformedHandoffError:
        endpoint, valid = None, False
    return {
        "available": True,
        "published": True,
        "valid": valid,
        "endpoint": endpoint,
        "epoch": publication.epoch,
        "published_at": publication.published_at,
    }
