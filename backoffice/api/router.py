from fastapi import APIRouter
from backoffice.api.resources import build_resource_router
from backoffice.services.roles import PermissionCache, RoleService
from backoffice.services.users import UserService

permission_cache = PermissionCache()

router = APIRouter()
router.include_router(
    build_resource_router(lambda db: RoleService(db, permission_cache=permission_cache)),
    prefix="/roles",
    tags=["AdminRoles"],
)
router.include_router(build_resource_router(UserService), prefix="/users", tags=["AdminUsers"])
