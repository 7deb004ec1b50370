from dataclasses import dataclass
from app.core.errors import OnboardingError, ValidationError
from app.core.logging_config import logger
from app.schemas.billing import CommitIntentResult, CreateIntentResult
from app.schemas.onboarding import CreateRestaurantRequest
from app.services.backend_gateway import BackendGateway


@dataclass
class ProvisionedOrganization:
    intent: CreateIntentResult
    organization: CommitIntentResult


class OrganizationService:
    """
    Two-phase tenant creation: create-intent, then commit-intent.

    A lost intent is never retried; callers start over from create-intent.
    """

    def validate(self, data: CreateRestaurantRequest) -> None:
        """
        Raises:
            ValidationError: If the owner or restaurant name is empty
        """
        fields = {}
        if not data.owner_name.strip():
            fields["owner_name"] = "Owner name is required."
        if not data.restaurant_name.strip():
            fields["restaurant_name"] = "Restaurant name is required."
        if fields:
            raise ValidationError(" ".join(fields.values()), fields=fields)

    async def create_restaurant(
        self,
        gateway: BackendGateway,
        data: CreateRestaurantRequest
    ) -> ProvisionedOrganization:
        """
        Create and commit a new organization.

        Args:
            gateway: Backend gateway bound to the current user
            data: Step 1 form

        Returns:
            The intent and the committed organization

        Raises:
            ValidationError: If a required field is empty
            ConflictError, RequestTimeoutError, BackendError: Passed through from the backend
        """
        self.validate(data)

        restaurant_name = data.restaurant_name.strip()
        logger.info(f"Creating intent for restaurant '{restaurant_name}' ({data.timezone})")
        intent = await gateway.create_intent(
            restaurant_name=restaurant_name,
            location_name=data.location_name.strip() or restaurant_name,
            timezone=data.timezone,
        )

        try:
            organization = await gateway.commit_intent(intent.intent_id, defer_billing_check=True)
        except OnboardingError:
            await self._release_intent(gateway, intent.intent_id)
            raise

        logger.info(
            f"Committed intent {intent.intent_id}: organization={organization.organization_id}, "
            f"code={organization.restaurant_code}"
        )
        return ProvisionedOrganization(intent=intent, organization=organization)

    async def _release_intent(self, gateway: BackendGateway, intent_id: str) -> None:
        try:
            await gateway.cancel_intent(intent_id)
            logger.info(f"Released intent {intent_id} after failed commit")
        except OnboardingError as e:
            logger.warning(f"Could not release intent {intent_id}: {e.message}")


# Create singleton instance
organization_service = OrganizationService()
