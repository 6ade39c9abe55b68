"""
Global identifier repository.

A global identifier is the application-wide identity of any entity that can
authenticate (an account, a device, ...). It links to that entity by name
and ID and holds the IDs of the groupings it belongs to in its JSON
globalIdentifierGroupings attribute. Groupings form a tree through
parentGroupingId; membership of a grouping implies membership of its
parents.
"""

import structlog
from typing import Any, Dict, List, Optional
from uuid import uuid4

from orm.src.data_layer import DataLayer, utc_now
from shared.errors import DataModelError, DxError

logger = structlog.get_logger(__name__)

IDENTIFIER_ENTITY = "globalIdentifier"
GROUPING_ENTITY = "globalIdentifierGrouping"


class GlobalIdentifierRepository:
    """Repository for global identifiers and their groupings."""

    def __init__(self, data_layer: DataLayer):
        """
        Initialize global identifier repository.

        Args:
            data_layer: Data layer for the merged data model
        """
        self.data_layer = data_layer

    async def create_global_identifier(
        self,
        linked_entity: str,
        linked_entity_id: int,
        groupings: Optional[List[int]] = None,
        is_super_user: bool = False,
        transaction=None,
    ) -> Dict[str, Any]:
        """
        Create a global identifier for an entity row.

        Args:
            linked_entity: Name of the entity the identifier belongs to
            linked_entity_id: ID of the row in that entity
            groupings: IDs of the groupings the identifier belongs to
            is_super_user: Grant unrestricted access
            transaction: Connection with an open transaction, if any

        Returns:
            The created identifier

        Raises:
            DatabaseError: On database error
        """
        data = {
            "uniqueIdentifier": str(uuid4()),
            "linkedEntity": linked_entity,
            "linkedEntityId": linked_entity_id,
            "isSuperUser": is_super_user,
            "globalIdentifierGroupings": list(groupings or []),
            "lastUpdated": utc_now(),
        }

        try:
            new_id = await self.data_layer.create(IDENTIFIER_ENTITY, data, transaction=transaction)
        except DxError as e:
            logger.error(
                "global_identifier_create_failed",
                linked_entity=linked_entity,
                linked_entity_id=linked_entity_id,
                error=str(e),
            )
            raise

        logger.info(
            "global_identifier_created",
            id=new_id,
            linked_entity=linked_entity,
            linked_entity_id=linked_entity_id,
        )
        return {"id": new_id, **data}

    async def get_global_identifier(self, unique_identifier: str, transaction=None) -> Optional[Dict[str, Any]]:
        """
        Get a global identifier by its uniqueIdentifier.

        Returns:
            The identifier or None if it does not exist
        """
        if not unique_identifier:
            return None
        return await self.data_layer.read_by_field(
            IDENTIFIER_ENTITY, "uniqueIdentifier", unique_identifier, transaction=transaction
        )

    async def get_grouping_by_name(self, name: str, transaction=None) -> Optional[Dict[str, Any]]:
        return await self.data_layer.read_by_field(GROUPING_ENTITY, "name", name, transaction=transaction)

    async def add_grouping(
        self,
        name: str,
        description: Optional[str] = None,
        parent: Optional[str] = None,
        transaction=None,
    ) -> int:
        """
        Create a grouping.

        Args:
            name: Grouping name
            description: Free text description
            parent: Name of the parent grouping, if any

        Returns:
            ID of the new grouping

        Raises:
            DataModelError: If the parent grouping does not exist
        """
        parent_id = None
        if parent:
            parent_grouping = await self.get_grouping_by_name(parent, transaction=transaction)
            if parent_grouping is None:
                raise DataModelError(f"Parent grouping '{parent}' does not exist")
            parent_id = parent_grouping["id"]

        new_id = await self.data_layer.create(
            GROUPING_ENTITY,
            {"name": name, "description": description, "parentGroupingId": parent_id},
            transaction=transaction,
        )
        logger.info("grouping_created", id=new_id, name=name, parent=parent)
        return new_id

    async def add_identifier_to_grouping(self, unique_identifier: str, grouping_name: str, transaction=None) -> bool:
        """
        Make a global identifier a member of a grouping.

        Returns:
            True if the membership was added, False if it already existed

        Raises:
            DataModelError: If the identifier or the grouping does not exist
        """
        identifier = await self.get_global_identifier(unique_identifier, transaction=transaction)
        if identifier is None:
            raise DataModelError(f"Global identifier '{unique_identifier}' does not exist")

        grouping = await self.get_grouping_by_name(grouping_name, transaction=transaction)
        if grouping is None:
            raise DataModelError(f"Grouping '{grouping_name}' does not exist")

        grouping_ids = list(identifier.get("globalIdentifierGroupings") or [])
        if grouping["id"] in grouping_ids:
            return False

        grouping_ids.append(grouping["id"])
        await self.data_layer.update(
            IDENTIFIER_ENTITY,
            {"id": identifier["id"], "globalIdentifierGroupings": grouping_ids},
            transaction=transaction,
        )
        logger.info("identifier_grouping_added", unique_identifier=unique_identifier, grouping=grouping_name)
        return True

    async def get_global_identifier_groupings_readable(self, unique_identifier: str, transaction=None) -> List[str]:
        """
        Lowercased names of every grouping the identifier belongs to,
        including the parents of those groupings.

        Returns:
            Grouping names, or [] if the identifier does not exist
        """
        identifier = await self.get_global_identifier(unique_identifier, transaction=transaction)
        if identifier is None:
            return []

        names: List[str] = []
        visited = set()
        pending = list(identifier.get("globalIdentifierGroupings") or [])

        while pending:
            grouping_id = pending.pop(0)
            if grouping_id is None or grouping_id in visited:
                continue
            visited.add(grouping_id)

            grouping = await self.data_layer.read(GROUPING_ENTITY, grouping_id, transaction=transaction)
            if grouping is None:
                logger.warning("grouping_missing", grouping_id=grouping_id, unique_identifier=unique_identifier)
                continue

            name = str(grouping.get("name") or "").lower()
            if name and name not in names:
                names.append(name)
            if grouping.get("parentGroupingId") is not None:
                pending.append(grouping["parentGroupingId"])

        return names
