from typing import AsyncIterator, Optional
from fastapi import APIRouter, Depends, Request, Response
from app.core.config import settings
from app.core.logging_config import logger
from app.core.session_context import get_session_key
from app.dependencies import CurrentUser, get_current_user, get_registry
from app.schemas.onboarding import (
    CheckoutRequest,
    CreateRestaurantRequest,
    ExistingOrganization,
    OnboardingView,
    OptionalSetupRequest,
    OwnerNameRequest,
    RoleRequest,
    SkipSetupRequest,
)
from app.services.controller import OnboardingController
from app.services.registry import ControllerRegistry

router = APIRouter()

LOCATION_PARAMS = ("role", "step", "checkout", "session_id", "intent_id")


async def get_controller(
    session_key: str = Depends(get_session_key),
    current_user: CurrentUser = Depends(get_current_user),
    registry: ControllerRegistry = Depends(get_registry)
) -> AsyncIterator[OnboardingController]:
    """
    Live controller for the caller's onboarding session, mounted if needed.
    A controller that finished during the request is evicted afterwards.
    """
    controller = await registry.get_or_mount(session_key, current_user.access_token)
    yield controller
    registry.discard_completed(session_key)


def _respond(response: Response, view: OnboardingView) -> OnboardingView:
    """
    Mark the new organization active in the caller's session once setup
    has completed.
    """
    if view.completion is not None:
        response.set_cookie(
            key=settings.COOKIE_NAME,
            value=view.completion.organization_id,
            httponly=True,
            secure=settings.cookie_secure,
            samesite=settings.cookie_samesite,
            domain=settings.cookie_domain,
            max_age=settings.cookie_max_age,
            path="/",
        )
    return view


@router.get("", response_model=OnboardingView)
async def mount_onboarding(
    request: Request,
    response: Response,
    session_key: str = Depends(get_session_key),
    current_user: CurrentUser = Depends(get_current_user),
    registry: ControllerRegistry = Depends(get_registry)
):
    """
    Mount the onboarding flow from location parameters.
    Called on first render and on every reload.
    """
    params = {name: request.query_params.get(name) for name in LOCATION_PARAMS}
    controller = await registry.get_or_mount(session_key, current_user.access_token, params=params)
    view = controller.view()
    registry.discard_completed(session_key)
    return _respond(response, view)


@router.get("/setup", response_model=OnboardingView)
async def mount_setup(
    request: Request,
    response: Response,
    organization_id: Optional[str] = None,
    restaurant_code: Optional[str] = None,
    session_key: str = Depends(get_session_key),
    current_user: CurrentUser = Depends(get_current_user),
    registry: ControllerRegistry = Depends(get_registry)
):
    """
    Re-enter setup for a restaurant that already exists.
    Starts at step 2 unless step 3 is requested. Without organization_id
    the organization recorded in the session is used, as on a checkout
    return.
    """
    params = {name: request.query_params.get(name) for name in LOCATION_PARAMS}
    existing_organization = None
    if organization_id:
        logger.info(f"Re-entering setup for organization {organization_id}")
        existing_organization = ExistingOrganization(
            organization_id=organization_id,
            restaurant_code=restaurant_code,
        )
    controller = await registry.get_or_mount(
        session_key,
        current_user.access_token,
        params=params,
        existing_organization=existing_organization,
        setup_mode=True,
    )
    view = controller.view()
    registry.discard_completed(session_key)
    return _respond(response, view)


@router.post("/role", response_model=OnboardingView)
async def select_role(
    data: RoleRequest,
    controller: OnboardingController = Depends(get_controller)
):
    return await controller.select_role(data.role)


@router.post("/back", response_model=OnboardingView)
async def go_back(controller: OnboardingController = Depends(get_controller)):
    """
    Go back one step. From step 1 this returns to role selection.
    """
    return await controller.go_back()


@router.put("/owner-name", response_model=OnboardingView)
async def update_owner_name(
    data: OwnerNameRequest,
    controller: OnboardingController = Depends(get_controller)
):
    return await controller.update_owner_name(data.owner_name)


@router.post("/restaurant", response_model=OnboardingView)
async def create_restaurant(
    data: CreateRestaurantRequest,
    controller: OnboardingController = Depends(get_controller)
):
    """
    Create the restaurant (step 1) and advance to step 2.
    """
    logger.info(f"Creating restaurant '{data.restaurant_name}' for session {controller.session_key}")
    return await controller.create_restaurant(data)


@router.post("/setup", response_model=OnboardingView)
async def save_optional_setup(
    data: OptionalSetupRequest,
    controller: OnboardingController = Depends(get_controller)
):
    """
    Save the optional setup details (step 2) and advance to step 3.
    Partial failures only produce a warning.
    """
    return await controller.save_optional_setup(data)


@router.post("/setup/skip", response_model=OnboardingView)
async def skip_optional_setup(
    data: Optional[SkipSetupRequest] = None,
    controller: OnboardingController = Depends(get_controller)
):
    return await controller.skip_optional_setup(data or SkipSetupRequest())


@router.post("/checkout", response_model=OnboardingView)
async def start_checkout(
    data: CheckoutRequest,
    controller: OnboardingController = Depends(get_controller)
):
    """
    Launch checkout (step 3). The view's `launch` tells the client whether
    to open a new tab, redirect this tab, or go to billing management.
    """
    return await controller.start_checkout(data)


@router.get("/checkout", response_model=OnboardingView)
async def read_checkout(
    response: Response,
    controller: OnboardingController = Depends(get_controller)
):
    return _respond(response, controller.view())


@router.post("/checkout/refresh", response_model=OnboardingView)
async def refresh_checkout(
    response: Response,
    controller: OnboardingController = Depends(get_controller)
):
    return _respond(response, await controller.refresh_checkout())


@router.post("/checkout/retry", response_model=OnboardingView)
async def retry_checkout(
    response: Response,
    controller: OnboardingController = Depends(get_controller)
):
    """
    Primary recovery action: retry finalize with the same checkout
    session, or reset so checkout can be started again.
    """
    return _respond(response, await controller.retry_checkout())


@router.post("/finish", response_model=OnboardingView)
async def finish_setup(
    response: Response,
    controller: OnboardingController = Depends(get_controller)
):
    """
    Finish onboarding and hand off to the dashboard.
    """
    await controller.finish_setup()
    return _respond(response, controller.view())


@router.post("/skip", response_model=OnboardingView)
async def skip_setup(controller: OnboardingController = Depends(get_controller)):
    """
    Abandon onboarding. Clears the session.
    """
    return await controller.skip_setup()


@router.delete("", response_model=OnboardingView)
async def unmount_onboarding(
    session_key: str = Depends(get_session_key),
    registry: ControllerRegistry = Depends(get_registry)
):
    """
    Unmount the flow: cancel checkout timers and release the UI lock.
    """
    controller = registry.get(session_key)
    if controller is None:
        return OnboardingView()
    await registry.unmount(session_key)
    return controller.view()
