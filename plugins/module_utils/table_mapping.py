# Copyright: (c) 2023, Brian Addicks <brian@addicks.us>
# GNU General Public License v3.0+ (see COPYING or https://www.gnu.org/licenses/gpl-3.0.txt)
"""Ingestion table mappings on an Azure Data Explorer database."""
import datetime
import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from azure.kusto.data import KustoClient
from azure.kusto.data.data_format import IngestionMappingKind

from .adx import (
    AdxCommandError,
    AdxValidationError,
    MappingDecodeError,
    Queries,
    TableMappingIdError,
    data_class_from_json,
)

logger = logging.getLogger(__name__)

ID_DELIMITER = "|"
SUPPORTED_KINDS = (IngestionMappingKind.JSON.value,)


@dataclass
class MappingEntry:
    """
    MappingEntry object - maps one field of an ingested document to a table column
    """

    column: str
    path: str
    datatype: str
    transform: str = ""

    def to_dict(self) -> dict:
        return dict(
            column=self.column,
            path=self.path,
            datatype=self.datatype,
            transform=self.transform,
        )


@dataclass
class TableMappingConfig:
    """
    TableMappingConfig object - the desired state of one ingestion mapping
    """

    name: str
    database_name: str
    table_name: str
    kind: str
    mapping: List[MappingEntry] = field(default_factory=list)

    @staticmethod
    def from_params(params: dict) -> "TableMappingConfig":
        entries = [
            MappingEntry(
                column=item.get("column") or "",
                path=item.get("path") or "",
                datatype=item.get("datatype") or "",
                transform=item.get("transform") or "",
            )
            for item in params.get("mapping") or []
        ]
        return TableMappingConfig(
            name=params.get("name") or "",
            database_name=params.get("database_name") or "",
            table_name=params.get("table_name") or "",
            kind=params.get("kind") or "",
            mapping=entries,
        )

    def validate(self) -> None:
        """
        Rejects the config before any command is built.
        :raises AdxValidationError: on empty required values or an unsupported kind
        """
        for attr in ("name", "database_name", "table_name"):
            if not getattr(self, attr):
                raise AdxValidationError(f"'{attr}' must not be empty")

        if self.kind.lower() not in [kind.lower() for kind in SUPPORTED_KINDS]:
            raise AdxValidationError(
                f"Mapping kind '{self.kind}' is not supported, expected one of: {', '.join(SUPPORTED_KINDS)}"
            )

        for index, entry in enumerate(self.mapping):
            for attr in ("column", "path", "datatype"):
                if not getattr(entry, attr):
                    raise AdxValidationError(
                        f"mapping[{index}].{attr} must not be empty"
                    )


@dataclass
class TableMappingId:
    """
    TableMappingId object - identity of a mapping, rendered as endpoint|database|table|kind|name
    """

    endpoint: str
    database_name: str
    table_name: str
    kind: str
    name: str

    def format(self) -> str:
        return ID_DELIMITER.join(
            [
                self.endpoint,
                self.database_name,
                self.table_name,
                self.kind.lower(),
                self.name,
            ]
        )

    @staticmethod
    def parse(resource_id: str) -> "TableMappingId":
        parts = (resource_id or "").split(ID_DELIMITER)
        if len(parts) != 5:
            raise TableMappingIdError(
                f"Table mapping ID '{resource_id}' must have 5 '{ID_DELIMITER}' separated fields, got {len(parts)}"
            )
        if not all(parts):
            raise TableMappingIdError(
                f"Table mapping ID '{resource_id}' contains an empty field"
            )
        endpoint, database_name, table_name, kind, name = parts
        return TableMappingId(endpoint, database_name, table_name, kind.lower(), name)


@dataclass
class TableMapping:
    """
    TableMapping object - one row of '.show table ... ingestion ... mapping'
    """

    name: str
    kind: str
    mapping: str
    last_updated_on: str = ""
    database: str = ""
    table: str = ""

    @staticmethod
    def from_row(row: dict) -> "TableMapping":
        record = data_class_from_json(row, TableMapping)
        if isinstance(record.last_updated_on, datetime.datetime):
            record.last_updated_on = record.last_updated_on.isoformat()
        elif record.last_updated_on is None:
            record.last_updated_on = ""
        else:
            record.last_updated_on = str(record.last_updated_on)
        return record

    def to_state(self) -> dict:
        return dict(
            name=self.name,
            database_name=self.database,
            table_name=self.table,
            kind=self.kind,
            mapping=[entry.to_dict() for entry in flatten_mapping(self.mapping)],
            last_updated_on=self.last_updated_on,
        )


def expand_mapping(entries: List[MappingEntry]) -> str:
    """
    Serializes mapping entries into the comma-joined object list placed inside '[...]'.
    transform is left out when empty.
    """
    if not entries:
        return ""

    mappings = []
    for entry in entries:
        block = dict(column=entry.column, path=entry.path, datatype=entry.datatype)
        if entry.transform:
            block["transform"] = entry.transform
        mappings.append(
            json.dumps(block, separators=(",", ":"), ensure_ascii=False)
        )
    return ",".join(mappings)


def flatten_mapping(text: str) -> List[MappingEntry]:
    """
    Parses a mapping body, either the JSON array stored on the cluster or the
    bare fragment produced by expand_mapping.
    :raises MappingDecodeError: when the body is not a JSON list of objects
    """
    if not text or not text.strip():
        return []

    body = text.strip()
    if not body.startswith("["):
        body = f"[{body}]"

    try:
        items = json.loads(body)
    except ValueError as ex:
        raise MappingDecodeError(f"Unable to decode mapping '{text}': {ex}") from ex

    if not isinstance(items, list):
        raise MappingDecodeError(f"Mapping '{text}' is not a JSON list")

    return [_entry_from_json(item, text) for item in items]


def _entry_from_json(item, text: str) -> MappingEntry:
    if not isinstance(item, dict):
        raise MappingDecodeError(f"Mapping '{text}' contains a non-object entry")

    # newer clusters nest Path/Transform under Properties
    fields = {key.lower(): value for key, value in item.items()}
    properties = fields.get("properties") or {}
    if isinstance(properties, dict):
        properties = {key.lower(): value for key, value in properties.items()}
    else:
        properties = {}

    def pick(name):
        value = fields.get(name)
        if value is None:
            value = properties.get(name)
        return "" if value is None else str(value)

    return MappingEntry(
        column=pick("column"),
        path=pick("path"),
        datatype=pick("datatype"),
        transform=pick("transform"),
    )


def _escape_literal(text: str) -> str:
    # body of a single-quoted Kusto string literal
    return text.replace("\\", "\\\\").replace("'", "\\'")


def create_statement(config: TableMappingConfig) -> str:
    mapping = _escape_literal(expand_mapping(config.mapping))
    return f".create-or-alter table {config.table_name} ingestion {config.kind.lower()} mapping '{config.name}' '[{mapping}]'"


def show_statement(mapping_id: TableMappingId) -> str:
    return f".show table {mapping_id.table_name} ingestion {mapping_id.kind.lower()} mapping '{mapping_id.name}'"


def drop_statement(mapping_id: TableMappingId) -> str:
    return f".drop table {mapping_id.table_name} ingestion {mapping_id.kind.lower()} mapping '{mapping_id.name}'"


class TableMappingResource:
    """
    Create/update, read and delete one kind of resource: an ingestion mapping of a table.
    """

    def __init__(self, kusto_client: KustoClient, endpoint: str, timeout: str = None):
        """
        :param kusto_client: Client used to send management commands
        :param endpoint: Cluster URI, first field of every resource ID
        :param timeout: Optional request timeout passed with every command
        """
        self.kusto_client = kusto_client
        self.endpoint = endpoint
        self.timeout = timeout

    def resource_id(self, config: TableMappingConfig) -> str:
        return TableMappingId(
            self.endpoint,
            config.database_name,
            config.table_name,
            config.kind,
            config.name,
        ).format()

    def create_or_update(
        self, config: TableMappingConfig
    ) -> Tuple[str, Optional[TableMapping]]:
        """
        Creates the mapping or replaces its body, then reads it back.
        :param config: Desired state
        :return: The resource ID and the state read back from the cluster
        """
        config.validate()
        command = create_statement(config)

        try:
            Queries.execute_command(
                self.kusto_client, config.database_name, command, self.timeout
            )
        except AdxCommandError as ex:
            raise AdxCommandError(
                f"error creating Mapping '{config.name}' (Table '{config.table_name}', Database '{config.database_name}'): {ex}"
            ) from ex

        resource_id = self.resource_id(config)
        logger.info("Created or altered table mapping %s", resource_id)
        return resource_id, self.read(resource_id)

    def read(self, resource_id: str) -> Optional[TableMapping]:
        """
        Fetches the mapping from the cluster.
        :param resource_id: endpoint|database|table|kind|name
        :return: The mapping, or None when the cluster has no such mapping
        """
        mapping_id = TableMappingId.parse(resource_id)

        try:
            rows = Queries.execute_command(
                self.kusto_client,
                mapping_id.database_name,
                show_statement(mapping_id),
                self.timeout,
            )
        except AdxCommandError as ex:
            raise AdxCommandError(
                f"error reading Mapping '{mapping_id.name}' (Table '{mapping_id.table_name}', Database '{mapping_id.database_name}'): {ex}"
            ) from ex

        schemas = [TableMapping.from_row(row.to_dict()) for row in rows]
        if not schemas:
            logger.info("Table mapping %s not found", resource_id)
            return None

        # surface a malformed body now rather than when the state is rendered
        flatten_mapping(schemas[0].mapping)
        return schemas[0]

    def delete(self, resource_id: str) -> None:
        """
        Drops the mapping from the cluster.
        :param resource_id: endpoint|database|table|kind|name
        """
        mapping_id = TableMappingId.parse(resource_id)

        try:
            Queries.execute_command(
                self.kusto_client,
                mapping_id.database_name,
                drop_statement(mapping_id),
                self.timeout,
            )
        except AdxCommandError as ex:
            raise AdxCommandError(
                f"error deleting Table Mapping '{mapping_id.name}' (Table '{mapping_id.table_name}', Database '{mapping_id.database_name}'): {ex}"
            ) from ex

        logger.info("Dropped table mapping %s", resource_id)
