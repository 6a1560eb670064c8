import pytest

from confidential.policy.placement import (
    KeyVaultObjectTarget,
    NamedValueTarget,
    SubscriptionTarget,
    canonicalize_constraint,
)


def test_keyvault_uri():
    target = KeyVaultObjectTarget("Vault-A", "secrets", "db-password")
    assert target.constraint_uri() == "az-c-keyvault://Vault-A@secrets=db-password"
    assert target.canonical_uri() == "az-c-keyvault://vault-a@secrets=db-password"


def test_keyvault_kind_is_checked():
    with pytest.raises(ValueError):
        KeyVaultObjectTarget("vault", "blobs", "x")


def test_relative_keyvault_target_resolves_with_default():
    target = KeyVaultObjectTarget("", "keys", "signing")
    assert target.is_relative()
    assert target.resolved("default-vault").constraint_uri() == "az-c-keyvault://default-vault@keys=signing"
    assert target.resolved(None) is target
    absolute = KeyVaultObjectTarget("vault", "keys", "signing")
    assert absolute.resolved("default-vault") is absolute


def test_named_value_uri():
    target = NamedValueTarget("sub-1", "rg", "MyService", "backend-secret")
    assert target.constraint_uri() == (
        "az-c-label:///subscriptions/sub-1/resourceGroups/rg"
        "/providers/Microsoft.ApiManagement/service/MyService/namedValues/backend-secret")
    assert "/service/myservice/namedValues/backend-secret" in target.canonical_uri()


def test_subscription_uri():
    target = SubscriptionTarget("sub-1", "rg", "svc", "subscr", api="orders", product="", user="u1")
    assert target.constraint_uri().endswith("/service/svc/subscriptions/subscr?api=orders/product=/user=u1")


@pytest.mark.parametrize("raw,canonical", [
    ("az-c-keyvault://VAULT@secrets=Name/", "az-c-keyvault://vault@secrets=Name"),
    ("az-c-keyvault://vault@secrets=Name//", "az-c-keyvault://vault@secrets=Name"),
    ("az-c-label:///subscriptions/S/resourceGroups/RG/providers/microsoft.apimanagement/service/SVC/namedValues/N",
     "az-c-label:///subscriptions/S/resourceGroups/RG/providers/microsoft.apimanagement/service/svc/namedValues/N"),
    ("something-else://Opaque/", "something-else://Opaque"),
])
def test_canonicalize_constraint(raw, canonical):
    assert canonicalize_constraint(raw) == canonical
    assert canonicalize_constraint(canonical) == canonical
