from clusterdeck.models.credential_resource import CredentialResource
from clusterdeck.models.kubernetes_cluster import KubernetesCluster
from clusterdeck.models.secret_entry import SecretEntry, VaultKeyring

__all__ = [
    "CredentialResource",
    "KubernetesCluster",
    "SecretEntry",
    "VaultKeyring",
]
