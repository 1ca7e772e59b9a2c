from dotenv import load_dotenv
from fastapi import FastAPI

from kubeboot import __version__
from kubeboot.api.middleware import AuthMiddleware
from kubeboot.api.routes import rendezvous, state, verify

load_dotenv()
app = FastAPI(title="kubeboot", version=__version__)
app.add_middleware(AuthMiddleware)

app.include_router(verify.router)
app.include_router(state.router)
app.include_router(rendezvous.router)
