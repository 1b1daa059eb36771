"""ACME protocol certificate source."""

import logging
from contextlib import ExitStack
from datetime import datetime
from typing import List, Optional, Type

import josepy as jose
import requests
from acme import challenges, client, errors, messages
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa
from josepy.errors import Error as JoseError

from .certutil import create_csr, generate_private_key, load_rsa_private_key, split_pem_chain
from .errors import ChallengeStateError, ConfigurationError, IssuanceError, ParseError
from .models import AuthorizationState, ManualChallenge
from .responder import ChallengeResponder
from .sources import CertSource, check_deadline

logger = logging.getLogger(__name__)

USER_AGENT = "le-responder"

# Everything the acme client stack can raise at us
ACME_ERRORS = (errors.Error, JoseError, requests.exceptions.RequestException)


class AcmeCertSource(CertSource):
    """Certificates from an ACME CA.

    Automated issuance answers HTTP-01 challenges through the challenge
    responder. Manual issuance hands a DNS-01 record to the operator and
    resumes the order once they have published it.
    """

    def __init__(self, name: str, directory_url: str, email: str,
                 account_key_pem: str, responder: ChallengeResponder):
        super().__init__(name)
        try:
            account_key = load_rsa_private_key(account_key_pem)
        except ParseError as e:
            raise ConfigurationError(f"source {name}: invalid private key found in pem for acme: {e}") from e

        self.directory_url = directory_url
        self.email = email
        self.responder = responder
        self.account_key = jose.JWKRSA(key=account_key)
        self.known_registered = False
        self._client: Optional[client.ClientV2] = None

    def supports_manual(self) -> bool:
        return True

    def _get_client(self) -> client.ClientV2:
        """Create ACME client instance on first use."""
        if self._client is None:
            net = client.ClientNetwork(self.account_key, user_agent=USER_AGENT)
            directory = messages.Directory.from_json(net.get(self.directory_url).json())
            self._client = client.ClientV2(directory, net=net)
        return self._client

    def _ensure_registered(self, acme_client: client.ClientV2) -> None:
        """Register the account unless we know it already is.

        Failures are logged and ignored; registration is attempted again on
        the next call until it succeeds.
        """
        if self.known_registered:
            return

        logger.info(f"Registering ACME account with {self.directory_url}")
        try:
            acme_client.new_account(messages.NewRegistration.from_data(
                email=self.email or None,
                terms_of_service_agreed=True
            ))
            logger.info(f"Registered new ACME account for {self.email}")
            self.known_registered = True
        except errors.ConflictError as e:
            # Already registered, pick up the existing account
            logger.info(f"Account already exists for {self.email}, retrieving it")
            try:
                acme_client.query_registration(messages.RegistrationResource(
                    body=messages.Registration(),
                    uri=e.location
                ))
                self.known_registered = True
            except ACME_ERRORS as lookup_error:
                logger.warning(f"Error retrieving existing ACME account, ignoring: {lookup_error}")
        except ACME_ERRORS as e:
            logger.warning(f"Error registering with ACME - we've likely already done so, ignoring: {e}")

    @staticmethod
    def _find_challenge(authz: messages.AuthorizationResource,
                        chall_type: Type[challenges.Challenge]) -> messages.ChallengeBody:
        for challb in authz.body.challenges:
            if isinstance(challb.chall, chall_type):
                return challb
        raise IssuanceError("no supported challenge type found")

    def _issue(self, acme_client: client.ClientV2, order: messages.OrderResource,
               deadline: datetime) -> List[x509.Certificate]:
        logger.info(f"Finalizing order {order.uri}")
        check_deadline(deadline, f"finalizing order {order.uri}")
        order = acme_client.finalize_order(order, deadline)
        try:
            chain = split_pem_chain(order.fullchain_pem)
        except ParseError as e:
            raise IssuanceError(f"bad certificate chain from CA: {e}") from e
        if not chain:
            raise IssuanceError("no certs returned")
        return chain

    def auto_fetch_cert(self, deadline, private_key, hostname):
        with self.locked(deadline):
            try:
                return self._auto_fetch_cert(deadline, private_key, hostname)
            except ACME_ERRORS as e:
                raise IssuanceError(f"{self.name}: {e}") from e

    def _auto_fetch_cert(self, deadline: datetime, private_key: rsa.RSAPrivateKey,
                         hostname: str) -> List[x509.Certificate]:
        acme_client = self._get_client()
        self._ensure_registered(acme_client)

        logger.info(f"Creating order for {hostname} with {self.name}")
        check_deadline(deadline, f"creating order for {hostname}")
        order = acme_client.new_order(create_csr(private_key, hostname))
        status = order.body.status

        if status == messages.STATUS_READY:
            logger.info(f"Order for {hostname} already validated")
        elif status == messages.STATUS_PENDING:
            # Published values are cleared however validation ends
            with ExitStack() as published:
                for authz in order.authorizations:
                    if authz.body.status != messages.STATUS_PENDING:
                        continue
                    challb = self._find_challenge(authz, challenges.HTTP01)
                    response, validation = challb.chall.response_and_validation(acme_client.net.key)
                    published.enter_context(
                        self.responder.published(challb.chall.path, validation.encode('utf-8'))
                    )
                    logger.info(f"Accepting http challenge for {hostname}")
                    check_deadline(deadline, f"answering http challenge for {hostname}")
                    acme_client.answer_challenge(challb, response)

                logger.info(f"Waiting authorization for {hostname}")
                order = acme_client.poll_authorizations(order, deadline)
        else:
            raise IssuanceError(f"invalid new order status {status}")

        return self._issue(acme_client, order, deadline)

    def manual_start_challenge(self, deadline, hostname):
        with self.locked(deadline):
            try:
                return self._manual_start_challenge(deadline, hostname)
            except ACME_ERRORS as e:
                raise IssuanceError(f"{self.name}: {e}") from e

    def _manual_start_challenge(self, deadline: datetime, hostname: str) -> ManualChallenge:
        acme_client = self._get_client()
        self._ensure_registered(acme_client)

        # Completion finalizes with a fresh key, this one only shapes the order
        check_deadline(deadline, f"creating order for {hostname}")
        order = acme_client.new_order(create_csr(generate_private_key(), hostname))
        if order.body.status == messages.STATUS_READY:
            raise ChallengeStateError("already authorized, no challenge needed")

        challb = None
        for authz in order.authorizations:
            if authz.body.status == messages.STATUS_PENDING:
                challb = self._find_challenge(authz, challenges.DNS01)
        if challb is None:
            raise IssuanceError(f"invalid new order status {order.body.status}")

        validation = challb.chall.validation(acme_client.net.key)
        message = (
            "Create DNS TXT record:\n"
            f"Name:  {challb.chall.validation_domain_name(hostname)}.\n"
            f"Value: {validation}"
        )
        logger.info(f"Started manual challenge for {hostname}")

        return ManualChallenge(
            message=message,
            challenge=challb.json_dumps(),
            order=order.body.json_dumps(),
            order_uri=order.uri,
            authorizations=[
                AuthorizationState(uri=authz.uri, body=authz.body.json_dumps())
                for authz in order.authorizations
            ],
        )

    def complete_challenge(self, deadline, private_key, hostname, challenge):
        with self.locked(deadline):
            try:
                return self._complete_challenge(deadline, private_key, hostname, challenge)
            except ACME_ERRORS as e:
                raise IssuanceError(f"{self.name}: {e}") from e

    def _complete_challenge(self, deadline: datetime, private_key: rsa.RSAPrivateKey,
                            hostname: str, challenge: ManualChallenge) -> List[x509.Certificate]:
        acme_client = self._get_client()
        self._ensure_registered(acme_client)

        challb = messages.ChallengeBody.json_loads(challenge.challenge)
        order = messages.OrderResource(
            body=messages.Order.json_loads(challenge.order),
            uri=challenge.order_uri,
            authorizations=[
                messages.AuthorizationResource(
                    body=messages.Authorization.json_loads(authz.body),
                    uri=authz.uri
                )
                for authz in challenge.authorizations
            ],
            csr_pem=create_csr(private_key, hostname),
        )

        logger.info(f"Accepting dns challenge for {hostname}")
        check_deadline(deadline, f"answering dns challenge for {hostname}")
        acme_client.answer_challenge(challb, challb.chall.response(acme_client.net.key))

        logger.info(f"Waiting authorization for {hostname}")
        order = acme_client.poll_authorizations(order, deadline)
        return self._issue(acme_client, order, deadline)
