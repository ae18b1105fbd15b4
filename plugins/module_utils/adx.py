# Copyright: (c) 2023, Brian Addicks <brian@addicks.us>
# GNU General Public License v3.0+ (see COPYING or https://www.gnu.org/licenses/gpl-3.0.txt)
"""Shared Azure Data Explorer plumbing for the adx collection modules."""
import dataclasses
import enum
import logging
import os
import uuid

import inflection
from azure.kusto.data import (
    ClientRequestProperties,
    KustoClient,
    KustoConnectionStringBuilder,
)
from azure.kusto.data.exceptions import KustoClientError, KustoServiceError

logger = logging.getLogger(__name__)

APPLICATION_NAME = "ansible-adx"


class AdxError(Exception):
    """Base class for errors raised by the adx collection."""


class AdxValidationError(AdxError):
    """Module input rejected before any command was sent."""


class AdxCommandError(AdxError):
    """A command sent to the cluster failed."""


class TableMappingIdError(AdxError):
    """A table mapping resource ID could not be parsed."""


class MappingDecodeError(AdxError):
    """The cluster returned a mapping body that is not valid JSON."""


class AuthenticationModeOptions(enum.Enum):
    """
    AuthenticationModeOptions - represents the different options to authenticate to the cluster
    """

    ManagedIdentity = "ManagedIdentity"
    AppKey = "AppKey"
    AppCertificate = "AppCertificate"


class Authentication:
    """
    Authentication helpers - in charge of building connection strings for the cluster
    """

    @classmethod
    def generate_connection_string(
        cls,
        cluster_url: str,
        authentication_mode: str,
        client_id="",
        client_secret="",
        tenant_id="",
    ) -> KustoConnectionStringBuilder:
        """
        Generates Kusto Connection String based on given Authentication Mode.
        :param cluster_url: Cluster to connect to.
        :param authentication_mode: User Authentication Mode, Options: (ManagedIdentity|AppKey|AppCertificate)
        :param client_id: AAD application ID, used by AppKey
        :param client_secret: AAD application key, used by AppKey
        :param tenant_id: AAD tenant, used by AppKey
        :return: A connection string to be used when creating a Client
        """
        if not cluster_url:
            raise AdxValidationError("A cluster URI is required to connect to ADX")

        if authentication_mode == AuthenticationModeOptions.ManagedIdentity.value:
            return cls.create_managed_identity_connection_string(cluster_url)

        if authentication_mode == AuthenticationModeOptions.AppKey.value:
            missing = [
                name
                for name, value in (
                    ("client_id", client_id),
                    ("client_secret", client_secret),
                    ("tenant_id", tenant_id),
                )
                if not value
            ]
            if missing:
                raise AdxValidationError(
                    f"Authentication mode 'AppKey' requires {', '.join(missing)}"
                )
            return KustoConnectionStringBuilder.with_aad_application_key_authentication(
                cluster_url, client_id, client_secret, tenant_id
            )

        if authentication_mode == AuthenticationModeOptions.AppCertificate.value:
            return cls.create_application_certificate_connection_string(cluster_url)

        raise AdxValidationError(
            f"Authentication mode '{authentication_mode}' is not supported"
        )

    @classmethod
    def create_managed_identity_connection_string(
        cls, cluster_url: str
    ) -> KustoConnectionStringBuilder:
        """
        Generates Kusto Connection String based on 'ManagedIdentity' Authentication Mode.
        :param cluster_url: Url of cluster to connect to
        :return: ManagedIdentity Kusto Connection String
        """
        # user-assigned identity when MANAGED_IDENTITY_CLIENT_ID is set, system-assigned otherwise
        client_id = os.environ.get("MANAGED_IDENTITY_CLIENT_ID")
        return (
            KustoConnectionStringBuilder.with_aad_managed_service_identity_authentication(
                cluster_url, client_id=client_id
            )
            if client_id
            else KustoConnectionStringBuilder.with_aad_managed_service_identity_authentication(
                cluster_url
            )
        )

    @classmethod
    def create_application_certificate_connection_string(
        cls, cluster_url: str
    ) -> KustoConnectionStringBuilder:
        """
        Generates Kusto Connection String based on 'AppCertificate' Authentication Mode.
        :param cluster_url: Url of cluster to connect to
        :return: AppCertificate Kusto Connection String
        """
        app_id = os.environ.get("APP_ID")
        app_tenant = os.environ.get("APP_TENANT")
        private_key_pem_file_path = os.environ.get("PRIVATE_KEY_PEM_FILE_PATH")
        cert_thumbprint = os.environ.get("CERT_THUMBPRINT")
        # Only used for "Subject Name and Issuer" auth
        public_cert_file_path = os.environ.get("PUBLIC_CERT_FILE_PATH")
        public_certificate = None

        if not private_key_pem_file_path:
            raise AdxValidationError(
                "Authentication mode 'AppCertificate' requires PRIVATE_KEY_PEM_FILE_PATH"
            )

        try:
            with open(private_key_pem_file_path, "r") as pem_file:
                pem_certificate = pem_file.read()
        except OSError as ex:
            raise AdxValidationError(
                f"Failed to load PEM file from {private_key_pem_file_path}: {ex}"
            ) from ex

        if public_cert_file_path:
            try:
                with open(public_cert_file_path, "r") as cert_file:
                    public_certificate = cert_file.read()
            except OSError as ex:
                raise AdxValidationError(
                    f"Failed to load public certificate file from {public_cert_file_path}: {ex}"
                ) from ex

            return KustoConnectionStringBuilder.with_aad_application_certificate_sni_authentication(
                cluster_url,
                app_id,
                pem_certificate,
                public_certificate,
                cert_thumbprint,
                app_tenant,
            )
        return KustoConnectionStringBuilder.with_aad_application_certificate_authentication(
            cluster_url, app_id, pem_certificate, cert_thumbprint, app_tenant
        )


class Queries:
    """
    Queries helpers - in charge of sending management commands to the cluster
    """

    MGMT_PREFIX = "."

    @classmethod
    def create_client_request_properties(
        cls, scope: str, timeout: str = None
    ) -> ClientRequestProperties:
        """
        Creates a fitting ClientRequestProperties object, to be used when executing control commands.
        :param scope: Working scope
        :param timeout: Request timeout, e.g. "10m"
        :return: ClientRequestProperties object
        """
        client_request_properties = ClientRequestProperties()
        client_request_properties.client_request_id = f"{scope};{str(uuid.uuid4())}"
        client_request_properties.application = APPLICATION_NAME

        if timeout:
            client_request_properties.set_option(
                ClientRequestProperties.request_timeout_option_name, timeout
            )

        return client_request_properties

    @classmethod
    def execute_command(
        cls,
        kusto_client: KustoClient,
        database_name: str,
        command: str,
        timeout: str = None,
    ):
        """
        Executes a management command using a premade client
        :param kusto_client: Premade client to run commands
        :param database_name: DB name
        :param command: The command to execute, must start with '.'
        :param timeout: Optional request timeout
        :return: The primary result table of the response
        """
        if not command.startswith(cls.MGMT_PREFIX):
            raise AdxValidationError(f"'{command}' is not a management command")

        client_request_properties = cls.create_client_request_properties(
            "Ansible_ADX_ControlCommand", timeout
        )
        logger.debug(
            "Executing '%s' on database '%s' (request id %s)",
            command,
            database_name,
            client_request_properties.client_request_id,
        )

        try:
            result = kusto_client.execute_mgmt(
                database_name, command, client_request_properties
            )
        except KustoClientError as ex:
            raise AdxCommandError(
                f"Client error while trying to execute command '{command}' on database '{database_name}': {ex}"
            ) from ex
        except KustoServiceError as ex:
            raise AdxCommandError(
                f"Server error while trying to execute command '{command}' on database '{database_name}': {ex}"
            ) from ex
        except Exception as ex:
            raise AdxCommandError(
                f"Unknown error while trying to execute command '{command}' on database '{database_name}': {ex}"
            ) from ex

        return result.primary_results[0] if result.primary_results else []


def remove_extra_keys(json_dict: dict, data_type: type) -> dict:
    assert dataclasses.is_dataclass(data_type)
    field_names = [field.name for field in dataclasses.fields(data_type)]
    return {key: value for key, value in json_dict.items() if key in field_names}


def keys_to_snake_case(json_dict: dict) -> dict:
    return {inflection.underscore(key): val for (key, val) in json_dict.items()}


def data_class_from_json(json_dict: dict, data_type: type):
    assert dataclasses.is_dataclass(data_type)
    all_keys = keys_to_snake_case(json_dict)
    known_keys = remove_extra_keys(all_keys, data_type)
    return data_type(**known_keys)
