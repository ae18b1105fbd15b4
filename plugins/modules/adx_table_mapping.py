#!/usr/bin/python

# Copyright: (c) 2023, Brian Addicks <brian@addicks.us>
# GNU General Public License v3.0+ (see COPYING or https://www.gnu.org/licenses/gpl-3.0.txt)

DOCUMENTATION = r"""
---
module: adx_table_mapping

short_description: Manage ingestion mappings of an Azure Data Explorer table.

version_added: "1.1.0"

description:
    - Create, update or drop a named ingestion mapping of an Azure Data Explorer table.
    - The mapping body is always sent with C(.create-or-alter), so a present mapping is replaced as a whole.

options:
    cluster_uri:
        description:
            - ADX Cluster URI
            - 'ie: https://myadx.region.kusto.windows.net'
            - Required if environment variable ADX_CLUSTER_URI is not set and I(id) is not given
        required: false
        type: str
    client_id:
        description:
            - Client ID used to authenticate to adx
            - 'ie: aaaabbbb-cccc-dddd-1111-222233334444'
            - Required for I(auth_mode=AppKey) if environment variable ADX_CLIENT_ID is not set
        required: false
        type: str
    client_secret:
        description:
            - Secret associated with Client ID
            - Required for I(auth_mode=AppKey) if environment variable ADX_CLIENT_SECRET is not set
        required: false
        type: str
    tenant_id:
        description:
            - Azure Tenant ID
            - 'ie: contoso.onmicrosoft.com'
            - Required for I(auth_mode=AppKey) if environment variable ADX_TENANT_ID is not set
        required: false
        type: str
    auth_mode:
        description:
            - How to authenticate to the cluster
            - C(ManagedIdentity) reads MANAGED_IDENTITY_CLIENT_ID for a user-assigned identity
            - C(AppCertificate) reads APP_ID, APP_TENANT, PRIVATE_KEY_PEM_FILE_PATH, CERT_THUMBPRINT and PUBLIC_CERT_FILE_PATH
        required: false
        type: str
        default: AppKey
        choices: [AppKey, ManagedIdentity, AppCertificate]
    request_timeout:
        description:
            - Server timeout for each command
            - 'ie: 10m'
        required: false
        type: str
    id:
        description:
            - Mapping ID as returned by this module, C(endpoint|database|table|kind|name)
            - Mutually exclusive with I(name), I(database_name), I(table_name) and I(kind)
        required: false
        type: str
    name:
        description:
            - Name of the ingestion mapping
        required: false
        type: str
    database_name:
        description:
            - ADX database name
        required: false
        type: str
    table_name:
        description:
            - ADX table name
        required: false
        type: str
    kind:
        description:
            - Mapping kind, only C(Json) is supported
        required: false
        type: str
    mapping:
        description:
            - Ordered column mappings
            - Required when I(state=present), an empty list is allowed
        required: false
        type: list
        elements: dict
        suboptions:
            column:
                description: Target column
                required: true
                type: str
            path:
                description: JSON path into the ingested document
                required: true
                type: str
            datatype:
                description: Kusto data type of the column
                required: true
                type: str
            transform:
                description: Ingestion time transform
                required: false
                type: str
    state:
        description:
            - Whether the mapping should exist
        required: false
        type: str
        default: present
        choices: [present, absent]

author:
    - Brian Addicks (@brianaddicks)
"""

EXAMPLES = r"""
- name: Map events json into the Events table
  adx_table_mapping:
    cluster_uri: https://myadx.region.kusto.windows.net
    client_id: aaaabbbb-cccc-dddd-1111-222233334444
    client_secret: '{{ my_super_secret }}'
    tenant_id: contoso.onmicrosoft.com
    database_name: testdb
    table_name: Events
    name: events_json
    kind: Json
    mapping:
      - column: Timestamp
        path: $.ts
        datatype: datetime
        transform: DateTimeFromUnixSeconds
      - column: Payload
        path: $.payload
        datatype: dynamic

- name: Drop a mapping by ID
  adx_table_mapping:
    id: https://myadx.region.kusto.windows.net|testdb|Events|json|events_json
    state: absent
"""

RETURN = r"""
id:
    description:
        - Mapping ID, C(endpoint|database|table|kind|name)
        - Empty when I(state=absent), the mapping no longer exists
    type: str
    returned: always
table_mapping:
    description: Mapping as stored on the cluster, empty when absent
    type: dict
    returned: always
    contains:
        name:
            description: Mapping name
            type: str
        database_name:
            description: Database name
            type: str
        table_name:
            description: Table name
            type: str
        kind:
            description: Mapping kind
            type: str
        mapping:
            description: Column mappings
            type: list
            elements: dict
        last_updated_on:
            description: Last server side update
            type: str
"""

from ansible.module_utils.basic import AnsibleModule, env_fallback
from azure.kusto.data import KustoClient

from ..module_utils.adx import (
    AdxError,
    AdxValidationError,
    Authentication,
    AuthenticationModeOptions,
)
from ..module_utils.table_mapping import (
    TableMappingConfig,
    TableMappingId,
    TableMappingResource,
)

IDENTITY_PARAMS = ["name", "database_name", "table_name", "kind"]


def argument_spec() -> dict:
    return dict(
        cluster_uri=dict(required=False, fallback=(env_fallback, ["ADX_CLUSTER_URI"])),
        client_id=dict(required=False, fallback=(env_fallback, ["ADX_CLIENT_ID"])),
        client_secret=dict(
            no_log=True, required=False, fallback=(env_fallback, ["ADX_CLIENT_SECRET"])
        ),
        tenant_id=dict(required=False, fallback=(env_fallback, ["ADX_TENANT_ID"])),
        auth_mode=dict(
            default=AuthenticationModeOptions.AppKey.value,
            choices=[mode.value for mode in AuthenticationModeOptions],
        ),
        request_timeout=dict(required=False),
        id=dict(required=False),
        name=dict(required=False),
        database_name=dict(required=False),
        table_name=dict(required=False),
        kind=dict(required=False),
        mapping=dict(
            type="list",
            elements="dict",
            required=False,
            options=dict(
                column=dict(required=True),
                path=dict(required=True),
                datatype=dict(required=True),
                transform=dict(required=False),
            ),
        ),
        state=dict(default="present", choices=["present", "absent"]),
    )


def build_config(params: dict) -> TableMappingConfig:
    """
    Binds module params to a TableMappingConfig, taking the identity from id when given.
    """
    if params.get("id"):
        mapping_id = TableMappingId.parse(params["id"])
        params = dict(
            params,
            name=mapping_id.name,
            database_name=mapping_id.database_name,
            table_name=mapping_id.table_name,
            kind=mapping_id.kind,
        )

    if params.get("state", "present") == "present" and params.get("mapping") is None:
        raise AdxValidationError("'mapping' is required when state is present")

    config = TableMappingConfig.from_params(params)
    config.validate()
    return config


def cluster_uri(params: dict) -> str:
    """
    Returns the cluster to connect to. With id, the endpoint inside the id wins and
    a cluster_uri (given or from ADX_CLUSTER_URI) naming another cluster is rejected.
    """
    if params.get("id"):
        endpoint = TableMappingId.parse(params["id"]).endpoint
        configured = params.get("cluster_uri")
        if configured and configured.rstrip("/") != endpoint.rstrip("/"):
            raise AdxValidationError(
                f"cluster_uri '{configured}' does not match the endpoint '{endpoint}' of id '{params['id']}'"
            )
        return endpoint
    if params.get("cluster_uri"):
        return params["cluster_uri"]
    raise AdxValidationError(
        "'cluster_uri' is required when ADX_CLUSTER_URI is not set and no id is given"
    )


def _result(changed: bool, resource_id: str, before: dict, after: dict) -> dict:
    return dict(
        changed=changed,
        id=resource_id,
        table_mapping=after,
        diff=dict(before=before, after=after),
    )


def apply_state(
    resource: TableMappingResource,
    config: TableMappingConfig,
    state: str,
    check_mode: bool = False,
    log=None,
) -> dict:
    """
    Drives the resource to the requested state.
    :param resource: TableMappingResource bound to a client
    :param config: Desired mapping
    :param state: present or absent
    :param check_mode: Report what would change without sending writes
    :param log: Optional callable receiving one line per action
    :return: Module result without the 'failed' key
    """
    log = log or (lambda msg: None)
    resource_id = resource.resource_id(config)
    current = resource.read(resource_id)
    before = current.to_state() if current else {}

    # an absent mapping has no id
    if state == "absent":
        if current is None:
            return _result(False, "", {}, {})
        if not check_mode:
            log(f"Dropping table mapping {resource_id}")
            resource.delete(resource_id)
        return _result(True, "", before, {})

    desired = dict(
        name=config.name,
        database_name=config.database_name,
        table_name=config.table_name,
        kind=current.kind if current else config.kind,
        mapping=[entry.to_dict() for entry in config.mapping],
        last_updated_on=before.get("last_updated_on", ""),
    )

    if check_mode:
        changed = current is None or before["mapping"] != desired["mapping"]
        return _result(changed, resource_id, before, desired)

    log(f"Creating or altering table mapping {resource_id}")
    resource_id, refreshed = resource.create_or_update(config)
    if refreshed is None:
        raise AdxError(
            f"Table mapping {resource_id} was not found after it was created"
        )

    after = refreshed.to_state()
    changed = current is None or before["mapping"] != after["mapping"]
    return _result(changed, resource_id, before, after)


def run_module():
    module = AnsibleModule(
        argument_spec=argument_spec(),
        mutually_exclusive=[["id", name] for name in IDENTITY_PARAMS],
        required_one_of=[["id", "name"]],
        required_together=[IDENTITY_PARAMS],
        supports_check_mode=True,
    )

    try:
        config = build_config(module.params)
        endpoint = cluster_uri(module.params)
        kusto_connection_string = Authentication.generate_connection_string(
            endpoint,
            module.params["auth_mode"],
            client_id=module.params.get("client_id"),
            client_secret=module.params.get("client_secret"),
            tenant_id=module.params.get("tenant_id"),
        )

        # the context manager closes the client's underlying sessions
        with KustoClient(kusto_connection_string) as kusto_client:
            resource = TableMappingResource(
                kusto_client, endpoint, timeout=module.params.get("request_timeout")
            )
            result = apply_state(
                resource,
                config,
                module.params["state"],
                check_mode=module.check_mode,
                log=module.log,
            )
    except AdxError as ex:
        module.fail_json(msg=str(ex))

    if not module._diff:
        result.pop("diff")
    module.exit_json(**result)


def main():
    run_module()


if __name__ == "__main__":
    main()
