"""Repository pattern for database access.

Provides clean abstraction layer between the document store and SQL.
Follows async patterns for FastAPI integration.
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Document


class DocumentRepository:
    """Repository for document rows."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session
        """
        self.session = session

    async def get(
        self, collection: str, doc_id: str, for_update: bool = False
    ) -> Document | None:
        """Retrieve a document by collection and ID.

        Args:
            collection: Collection name
            doc_id: Document ID
            for_update: Lock the row until the transaction ends (PostgreSQL)

        Returns:
            Document instance if found, None otherwise
        """
        query = select(Document).where(
            Document.collection == collection, Document.id == doc_id
        )
        if for_update:
            query = query.with_for_update()

        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def list_collection(self, collection: str) -> list[Document]:
        """Retrieve every document in a collection.

        Args:
            collection: Collection name

        Returns:
            List of Document instances ordered by ID
        """
        query = (
            select(Document)
            .where(Document.collection == collection)
            .order_by(Document.id.asc())
        )

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def save(
        self, collection: str, doc_id: str, data: dict[str, Any], version: int
    ) -> Document:
        """Insert or overwrite a document body and version.

        Args:
            collection: Collection name
            doc_id: Document ID
            data: JSON-ready document body
            version: Version to store

        Returns:
            The persisted Document instance
        """
        document = await self.get(collection, doc_id)
        if document is None:
            document = Document(collection=collection, id=doc_id, data=data, version=version)
            self.session.add(document)
        else:
            document.data = data
            document.version = version
        await self.session.flush()
        return document

    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document.

        Args:
            collection: Collection name
            doc_id: Document ID

        Returns:
            True if document was deleted, False if not found
        """
        document = await self.get(collection, doc_id)
        if document:
            await self.session.delete(document)
            return True
        return False
