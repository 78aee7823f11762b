from fastapi import APIRouter, Depends

from signaturehub.core.dependencies import get_package_service
from signaturehub.services.package import PackageService
from signaturehub.models.package import PublicPackageStatus

router = APIRouter()


@router.get("/{package_code}", response_model=PublicPackageStatus)
def get_public_status(
    package_code: str,
    service: PackageService = Depends(get_package_service)
):
    """
    Public progress page for a package, addressed by its PKG- code.
    Shows who has signed; never exposes contact details or sign links.
    """
    return service.get_public_status(package_code)
