from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, List, Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.requests import (
    AcceptEmailValidationRequest,
    AcceptInvitationRequest,
    AcceptPasswordRequest,
    AcceptPrivacyPolicyRequest,
    AcceptTermsRequest,
    ActionTokenRequest,
    CredentialRequest,
    InvitationRequest,
    SignInRequest,
    SignUpRequest,
    UserAccountRequest,
    UserCreateRequest,
    UserUpdateRequest,
)
from tenantauth.service.accounts import UserAccountService
from tenantauth.service.action_tokens import ActionTokenService
from tenantauth.service.action_types import ActionType, Mask, list_flags
from tenantauth.service.credentials import CredentialService
from tenantauth.service.errors import BadRequestError, ForbiddenError, ServiceError
from tenantauth.service.jwt import AuthResponse, JwtService, RequestContext
from tenantauth.service.notification import NotificationService, build_action_link
from tenantauth.service.tenants import EstablishmentService, OrganisationService
from tenantauth.service.users import UserService
from tenantauth.storage.models import ActionToken, CredentialType, User, utcnow

logger = get_logger(__name__)

_DEFAULT_VALIDITY_HOURS = 24

PreActions = Callable[[User], Optional[UserUpdateRequest]]


class AuthService:
    """User-facing identity flows built on the credential, token and account services.

    Every flow that redeems an action token validates it first, performs its
    work and only then revokes the token, so a failed step leaves the token
    usable for a retry.
    """

    def __init__(
        self,
        settings: Settings,
        users: UserService,
        credentials: CredentialService,
        accounts: UserAccountService,
        action_tokens: ActionTokenService,
        jwt: JwtService,
        organisations: OrganisationService,
        establishments: EstablishmentService,
        notifier: NotificationService,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.users = users
        self.credentials = credentials
        self.accounts = accounts
        self.action_tokens = action_tokens
        self.jwt = jwt
        self.organisations = organisations
        self.establishments = establishments
        self.notifier = notifier
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    def get_max_expiration_time(self, mask: Mask) -> int:
        """Longest configured validity, in hours, among the actions in ``mask``."""
        hours = [
            self.settings.action_settings(flag).validity_hours for flag in list_flags(mask)
        ]
        if not hours:
            logger.warning("action_mask_without_actions", mask=int(mask))
            return _DEFAULT_VALIDITY_HOURS
        return max(hours)

    # sign up / sign in

    async def sign_up(
        self, request: SignUpRequest, frontend_url: Optional[str] = None
    ) -> User:
        """Register a user with a password; no account is bound yet."""
        if not self.settings.user_can_sign_up:
            raise ForbiddenError("Sign up is disabled")
        if not request.accepted_terms or not request.accepted_privacy_policy:
            raise BadRequestError("User must accept the terms and privacy policy")
        create = UserCreateRequest(
            email=request.email,
            username=request.username,
            first_name=request.first_name,
            last_name=request.last_name,
            phone=request.phone,
            profile_picture=request.profile_picture,
            enabled=request.enabled,
            accepted_terms=True,
            accepted_privacy_policy=True,
            credentials=[
                CredentialRequest(type=CredentialType.PASSWORD, password=request.password)
            ],
        )
        user = await asyncio.to_thread(self.users.create, create)
        logger.info("user_signed_up", user_id=user.id)
        if frontend_url:
            await self.send_email_validation(user.id, frontend_url)
        return user

    async def sign_in(
        self, request: SignInRequest, ctx: Optional[RequestContext] = None
    ) -> AuthResponse:
        user = self.users.find_by_email(request.email)
        if user is None:
            logger.warning("sign_in_unknown_email")
            raise BadRequestError("Invalid credentials")
        accounts = self.accounts.find_by_user_id(user.id)
        if not accounts:
            logger.warning("sign_in_without_account", user_id=user.id)
            raise BadRequestError("User has no account")
        account = accounts[0]
        token = await self.jwt.authenticate(account, request.password, ctx)
        logger.info("user_signed_in", user_id=user.id, user_account_id=account.id)
        return AuthResponse(jwt=token, user_account=account, user=user)

    def sign_out(self, ctx: RequestContext) -> None:
        self.jwt.logout(ctx)

    # sending action tokens

    async def send_action_token(
        self,
        request: ActionTokenRequest,
        frontend_url: str,
        pre_actions: Optional[PreActions] = None,
    ) -> ActionToken:
        """Create an action token and email its link to the target address.

        ``pre_actions`` receives the loaded user and may return an update that is
        applied before the token is created. Delivery failures are logged and
        do not undo the token.
        """
        if not frontend_url:
            raise BadRequestError("Frontend URL is required for security reasons")

        user: Optional[User] = None
        if request.user_id:
            user = self.users.find_by_id(request.user_id)
            if user is None:
                raise BadRequestError(
                    f"User with id {request.user_id} not found",
                    detail={"user_id": request.user_id},
                )
            if pre_actions is not None:
                update = pre_actions(user)
                if update is not None:
                    user = self.users.patch(user.id, update)
            email = user.email
        elif request.email:
            email = request.email
        else:
            raise BadRequestError("Either email or user must be provided in the request")

        expires_in = request.expires_in or self.get_max_expiration_time(request.type)
        token = self.action_tokens.create(
            request.model_copy(
                update={
                    "email": email,
                    "user_id": user.id if user else None,
                    "expires_in": expires_in,
                }
            )
        )

        first = list_flags(token.type)[0]
        link = build_action_link(
            frontend_url,
            self.settings.action_settings(first).route,
            token.token,
            token.email,
        )
        try:
            sent = await asyncio.to_thread(
                self.notifier.send_action_token_email, token, link, expires_in
            )
        except Exception as exc:
            logger.error(
                "action_token_notification_failed",
                type=token.type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            sent = False
        if not sent:
            logger.warning("action_token_not_delivered", type=token.type)
        logger.info("action_token_sent", type=token.type, user_id=token.user_id)
        return token

    async def send_invitation(
        self, request: InvitationRequest, frontend_url: str
    ) -> ActionToken:
        """Invite an unknown email into an organisation/establishment given by name."""
        if self.users.exists(request.email):
            logger.warning("invitation_existing_user")
            raise BadRequestError("A user with the same email already exists")

        organisation_name = request.organisation or self.settings.action_invite_organisation
        establishment_name = (
            request.establishment or self.settings.action_invite_establishment
        )
        if establishment_name and not organisation_name:
            raise BadRequestError("An establishment requires an organisation")

        organisation_id: Optional[str] = None
        establishment_id: Optional[str] = None
        if organisation_name:
            organisation = self.organisations.find_by_name(organisation_name)
            if organisation is None:
                raise BadRequestError(
                    f'Organisation "{organisation_name}" not found',
                    detail={"organisation": organisation_name},
                )
            organisation_id = organisation.id
            if establishment_name:
                establishment = self.establishments.find_by_name_and_organisation(
                    establishment_name, organisation.id
                )
                if establishment is None:
                    raise BadRequestError(
                        f'Establishment "{establishment_name}" not found in '
                        f'organisation "{organisation_name}"',
                        detail={
                            "organisation": organisation_name,
                            "establishment": establishment_name,
                        },
                    )
                establishment_id = establishment.id

        return await self.send_action_token(
            ActionTokenRequest(
                type=ActionType.INVITE,
                email=request.email,
                organisation_id=organisation_id,
                establishment_id=establishment_id,
                roles=request.roles or list(self.settings.user_default_roles),
                expires_in=request.expires_in,
            ),
            frontend_url,
        )

    async def send_email_validation(self, user_id: str, frontend_url: str) -> ActionToken:
        return await self.send_action_token(
            ActionTokenRequest(type=ActionType.VALIDATE_EMAIL, user_id=user_id),
            frontend_url,
            lambda user: UserUpdateRequest(email_validated=False),
        )

    async def send_reset_password(
        self, email: str, frontend_url: str
    ) -> Optional[ActionToken]:
        """Send a reset link; an unknown email returns silently."""
        user = self.users.find_by_email(email)
        if user is None:
            logger.warning("reset_password_unknown_email")
            return None
        return await self.send_action_token(
            ActionTokenRequest(type=ActionType.RESET_PASSWORD, user_id=user.id),
            frontend_url,
        )

    async def send_change_password(self, user_id: str, frontend_url: str) -> ActionToken:
        return await self.send_action_token(
            ActionTokenRequest(type=ActionType.CHANGE_PASSWORD, user_id=user_id),
            frontend_url,
        )

    async def send_accept_terms(self, user_id: str, frontend_url: str) -> ActionToken:
        return await self.send_action_token(
            ActionTokenRequest(type=ActionType.ACCEPT_TERMS, user_id=user_id),
            frontend_url,
        )

    async def send_accept_privacy_policy(
        self, user_id: str, frontend_url: str
    ) -> ActionToken:
        return await self.send_action_token(
            ActionTokenRequest(type=ActionType.ACCEPT_PRIVACY_POLICY, user_id=user_id),
            frontend_url,
        )

    # redeeming action tokens

    def _token_user(self, token: ActionToken) -> User:
        if not token.user_id:
            raise BadRequestError("Action token is not linked to a user")
        return self.users.get_by_id(token.user_id)

    async def accept_invitation(
        self, request: AcceptInvitationRequest, ctx: Optional[RequestContext] = None
    ) -> AuthResponse:
        """Create the invited user and its account, then sign it in."""
        token = self.action_tokens.validate(request.action, ActionType.INVITE)
        if not request.password:
            raise BadRequestError("Password is required to accept an invitation")

        credentials: List[CredentialRequest] = [
            CredentialRequest(type=CredentialType.PASSWORD, password=request.password)
        ]
        if request.google_id:
            credentials.append(
                CredentialRequest(type=CredentialType.GOOGLE, google_id=request.google_id)
            )
        user = await asyncio.to_thread(
            self.users.create,
            UserCreateRequest(
                email=token.email,
                username=request.username,
                first_name=request.first_name,
                last_name=request.last_name,
                phone=request.phone,
                profile_picture=request.profile_picture,
                email_validated=True,
                credentials=credentials,
            ),
        )
        try:
            account = self.accounts.create(
                UserAccountRequest(
                    user_id=user.id,
                    organisation_id=token.organisation_id,
                    establishment_id=token.establishment_id,
                    roles=[role.name for role in token.roles],
                )
            )
        except ServiceError:
            self.users.delete(user.id)
            logger.warning("invitation_account_rolled_back", user_id=user.id)
            raise

        self.action_tokens.revoke(token.token)
        jwt_token = await self.jwt.authenticate(account, request.password, ctx)
        logger.info(
            "invitation_accepted",
            user_id=user.id,
            user_account_id=account.id,
            organisation_id=account.organisation_id,
            establishment_id=account.establishment_id,
        )
        return AuthResponse(jwt=jwt_token, user_account=account, user=user)

    async def accept_email_validation(self, request: AcceptEmailValidationRequest) -> User:
        token = self.action_tokens.validate(request.action, ActionType.VALIDATE_EMAIL)
        user = self._token_user(token)
        user = self.users.set_flags(user.id, email_validated=True)
        self.action_tokens.revoke(token.token)
        logger.info("email_validated", user_id=user.id)
        return user

    async def accept_terms(self, request: AcceptTermsRequest) -> User:
        token = self.action_tokens.validate(request.action, ActionType.ACCEPT_TERMS)
        user = self._token_user(token)
        if not request.accepted_terms:
            logger.warning("terms_rejected", user_id=user.id)
            raise BadRequestError("User must accept the terms")
        user = self.users.set_flags(user.id, accepted_terms=True)
        self.action_tokens.revoke(token.token)
        logger.info("terms_accepted", user_id=user.id)
        return user

    async def accept_privacy_policy(self, request: AcceptPrivacyPolicyRequest) -> User:
        token = self.action_tokens.validate(
            request.action, ActionType.ACCEPT_PRIVACY_POLICY
        )
        user = self._token_user(token)
        if not request.accepted_privacy_policy:
            logger.warning("privacy_policy_rejected", user_id=user.id)
            raise BadRequestError("User must accept the privacy policy")
        user = self.users.set_flags(user.id, accepted_privacy_policy=True)
        self.action_tokens.revoke(token.token)
        logger.info("privacy_policy_accepted", user_id=user.id)
        return user

    async def _accept_password(self, request: AcceptPasswordRequest, action: ActionType) -> User:
        token = self.action_tokens.validate(request.action, action)
        user = self._token_user(token)
        if not request.password:
            raise BadRequestError("Password is required for this action")
        await asyncio.to_thread(self.credentials.set_password, user.id, request.password)
        self.action_tokens.revoke(token.token)
        logger.info("password_set", user_id=user.id, action=action.name.lower())
        return user

    async def accept_reset_password(self, request: AcceptPasswordRequest) -> User:
        return await self._accept_password(request, ActionType.RESET_PASSWORD)

    async def accept_change_password(self, request: AcceptPasswordRequest) -> User:
        return await self._accept_password(request, ActionType.CHANGE_PASSWORD)
