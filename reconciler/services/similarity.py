"""Built-in similarity retriever over categorized ledger history."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reconciler.models import LedgerTransaction, StagingTransaction, Subcategory
from reconciler.schemas.categorization import SimilarTransaction
from reconciler.services.scoring import description_score, extract_merchant_tokens

# Rows fetched per requested result; the ilike prefilter is loose.
_OVERFETCH = 4


class LedgerSimilarityRetriever:
    """Find past ledger transactions sharing the row's leading merchant token."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_similar(self, transaction: StagingTransaction, *, limit: int) -> list[SimilarTransaction]:
        merchant_tokens = extract_merchant_tokens(transaction.description)
        if not merchant_tokens or limit <= 0:
            return []

        token = merchant_tokens[0]
        safe_token = token.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{safe_token}%"

        result = await self.db.execute(
            select(LedgerTransaction, Subcategory.name)
            .join(Subcategory, Subcategory.id == LedgerTransaction.subcategory_id)
            .where(LedgerTransaction.description.ilike(pattern, escape="\\"))
            .order_by(LedgerTransaction.transaction_date.desc(), LedgerTransaction.id.desc())
            .limit(limit * _OVERFETCH)
        )

        similar = []
        for past, subcategory_name in result.all():
            similarity = description_score(transaction.description, past.description)
            if similarity <= 0:
                continue
            similar.append(
                SimilarTransaction(
                    transaction_id=past.id,
                    description=past.description,
                    amount=past.amount,
                    transaction_date=past.transaction_date,
                    subcategory_id=past.subcategory_id,
                    subcategory_name=subcategory_name,
                    similarity=similarity,
                )
            )
        similar.sort(key=lambda s: (-s.similarity, -s.transaction_id))
        return similar[:limit]
