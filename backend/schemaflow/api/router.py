from fastapi import APIRouter

from schemaflow.api.routes.files import router as files_router
from schemaflow.api.routes.mappings import router as mappings_router
from schemaflow.api.routes.projects import router as projects_router
from schemaflow.api.routes.schemas import router as schemas_router

api_router = APIRouter()

api_router.include_router(projects_router)
api_router.include_router(files_router)
api_router.include_router(schemas_router)
api_router.include_router(mappings_router)
