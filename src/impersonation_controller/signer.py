"""Loading of the credential signing CA into its shared provider.

The signing CA is only made available while the impersonation proxy is
fully ready; any other outcome clears it.
"""

from icecream import ic
from kubernetes.client.exceptions import ApiException

from impersonation_controller import console
from impersonation_controller.cluster import Cluster
from impersonation_controller.dynamiccert import DynamicCertProvider
from impersonation_controller.exceptions import CertificateError, SigningCredentialError
from impersonation_controller.models import ControllerSettings, StrategyStatus
from impersonation_controller.tls import secret_bytes

# Keys written by the concierge certificate manager into the signing Secret.
SIGNER_CERT_KEY = "caCertificate"
SIGNER_PRIVATE_KEY_KEY = "caCertificatePrivateKey"


def clear_signer_ca(provider: DynamicCertProvider) -> None:
    """Forget the loaded credential signing CA."""
    ic("clearing credential signing certificate for impersonation proxy")
    provider.unset_cert_key_content()


def load_signer_ca(
    cluster: Cluster,
    settings: ControllerSettings,
    provider: DynamicCertProvider,
    status: StrategyStatus,
) -> None:
    """Load or clear the credential signing CA depending on the sync outcome.

    Args:
        cluster: The resource store.
        settings: Controller resource names.
        provider: The signing certificate provider shared with the proxy.
        status: The status composed for this sync pass.

    Raises:
        SigningCredentialError: If the status is Success but the signing
            Secret is missing or holds unusable PEM data.

    """
    if status != StrategyStatus.SUCCESS:
        clear_signer_ca(provider)
        return

    try:
        secret = cluster.get_secret(settings.signer_secret_name)
    except ApiException as err:
        raise SigningCredentialError(f"could not load the impersonator's credential signing secret: {err}") from err
    if secret is None:
        raise SigningCredentialError(
            f"could not load the impersonator's credential signing secret: "
            f'secret "{settings.signer_secret_name}" not found'
        )

    try:
        provider.set_cert_key_content(secret_bytes(secret, SIGNER_CERT_KEY), secret_bytes(secret, SIGNER_PRIVATE_KEY_KEY))
    except CertificateError as err:
        raise SigningCredentialError(f"could not load the impersonator's credential signing secret: {err}") from err

    console.step(
        "Loaded credential signing certificate for impersonation proxy from "
        f"{console.ref(settings.namespace, settings.signer_secret_name)}"
    )
