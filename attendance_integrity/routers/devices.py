from fastapi import APIRouter, Depends, Response, status

from attendance_integrity.container import Services, get_services
from attendance_integrity.schemas import DeviceRead
from attendance_integrity.security import Actor, require_actor

router = APIRouter(prefix="/api/devices", tags=["devices"])


@router.get("", response_model=list[DeviceRead])
def list_my_devices(
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
) -> list[DeviceRead]:
    return [DeviceRead.model_validate(item) for item in services.registry.list_devices(actor.user_id)]


@router.post("/{device_id}/trust", response_model=DeviceRead)
def trust_device(
    device_id: int,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
) -> DeviceRead:
    return DeviceRead.model_validate(services.registry.trust(device_id, actor.user_id))


@router.post("/{device_id}/revoke", response_model=DeviceRead)
def revoke_device(
    device_id: int,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
) -> DeviceRead:
    return DeviceRead.model_validate(services.registry.revoke(device_id, actor.user_id))


@router.delete("/{device_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_device(
    device_id: int,
    actor: Actor = Depends(require_actor),
    services: Services = Depends(get_services),
) -> Response:
    services.registry.delete(device_id, actor.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
