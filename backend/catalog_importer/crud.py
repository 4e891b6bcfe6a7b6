# catalog_importer/crud.py
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

from sqlalchemy import String, cast, or_
from sqlalchemy.orm import Session

from . import models, schemas
from .utils import new_id, utcnow


class CategoryStore:
    """Read-only category lookups scoped to a store."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def exists(self, store_id: str, category_id: str) -> bool:
        with self.session_factory() as db:
            return category_exists(db, store_id, category_id)


def category_exists(db: Session, store_id: str, category_id: str) -> bool:
    return (
        db.query(models.Category.id)
        .filter(models.Category.id == category_id, models.Category.store_id == store_id)
        .first()
        is not None
    )


def create_category(db: Session, store_id: str, name: str, category_id: Optional[str] = None):
    obj = models.Category(id=category_id or new_id(), store_id=store_id, name=name)
    db.add(obj)
    db.commit()
    return obj


def get_product(db: Session, product_id: str):
    return db.query(models.Product).filter(models.Product.id == product_id).first()


def get_product_by_name(db: Session, store_id: str, name: str):
    return (
        db.query(models.Product)
        .filter(models.Product.store_id == store_id, models.Product.name == name)
        .first()
    )


def names_in_use(
    db: Session, store_id: str, names: Sequence[str], prefixes: Sequence[str] = ()
) -> Set[str]:
    """Names in the store equal to one of ``names`` or starting with one of ``prefixes``."""
    clauses = [models.Product.name.startswith(p, autoescape=True) for p in prefixes]
    if names:
        clauses.append(models.Product.name.in_(list(names)))
    if not clauses:
        return set()
    rows = (
        db.query(models.Product.name)
        .filter(models.Product.store_id == store_id, or_(*clauses))
        .all()
    )
    return {r[0] for r in rows}


def get_products_by_ids(db: Session, ids: Sequence[str]) -> Dict[str, models.Product]:
    if not ids:
        return {}
    items = db.query(models.Product).filter(models.Product.id.in_(list(ids))).all()
    return {p.id: p for p in items}


def count_products(db: Session, store_id: str) -> int:
    return db.query(models.Product).filter(models.Product.store_id == store_id).count()


def diff_product(obj: models.Product, row: schemas.ProductRow) -> List[str]:
    """Names of the fields that differ between a stored entry and an incoming row."""
    changed = []
    if (obj.description or None) != row.description:
        changed.append("description")
    if Decimal(obj.price).quantize(schemas.PRICE_QUANT) != row.price:
        changed.append("price")
    if obj.category_id != row.category_id:
        changed.append("category_id")
    if obj.download_url != row.download_url:
        changed.append("download_url")
    if obj.video_url != row.video_url:
        changed.append("video_url")
    if bool(obj.is_featured) != row.is_featured:
        changed.append("is_featured")
    if bool(obj.is_archived) != row.is_archived:
        changed.append("is_archived")
    if set(obj.keywords or []) != set(row.keywords):
        changed.append("keywords")
    if row.image_urls is not None and [i.url for i in obj.images] != row.image_urls:
        changed.append("images")
    return changed


def apply_changes(db: Session, obj: models.Product, row: schemas.ProductRow, changed: List[str]):
    for field in changed:
        if field == "images":
            replace_images(db, obj, row.image_urls or [])
        elif field == "keywords":
            obj.keywords = list(row.keywords)
        else:
            setattr(obj, field, getattr(row, field))
    if changed == ["images"]:
        # touch so the entry's updated_at reflects the new image list
        obj.updated_at = utcnow()
    db.commit()
    return obj


def replace_images(db: Session, obj: models.Product, urls: List[str]):
    # delete then recreate: position order is significant
    obj.images.clear()
    db.flush()
    obj.images.extend(
        models.ProductImage(id=new_id(), url=url, position=i) for i, url in enumerate(urls)
    )


def create_product(db: Session, store_id: str, row: schemas.ProductRow):
    obj = models.Product(
        id=new_id(),
        store_id=store_id,
        name=row.name,
        description=row.description,
        price=row.price,
        category_id=row.category_id,
        download_url=row.download_url,
        video_url=row.video_url,
        is_featured=row.is_featured,
        is_archived=row.is_archived,
        keywords=list(row.keywords),
    )
    obj.images = [
        models.ProductImage(id=new_id(), url=url, position=i)
        for i, url in enumerate(row.image_urls or [])
    ]
    db.add(obj)
    db.commit()
    return obj


def set_archived(db: Session, obj: models.Product, archived: bool):
    obj.is_archived = archived
    db.commit()
    return obj


def delete_product(db: Session, obj: models.Product):
    db.delete(obj)
    db.commit()


def fallback_search(
    db: Session,
    store_id: str,
    query: str,
    category_id: Optional[str] = None,
    skip: int = 0,
    limit: int = 48,
) -> Tuple[List[models.Product], int]:
    """Substring match on the text columns, newest first."""
    text = query.strip()
    q = db.query(models.Product).filter(
        models.Product.store_id == store_id,
        models.Product.is_archived.is_(False),
        or_(
            models.Product.name.icontains(text, autoescape=True),
            models.Product.description.icontains(text, autoescape=True),
            cast(models.Product.keywords, String).icontains(text, autoescape=True),
        ),
    )
    if category_id:
        q = q.filter(models.Product.category_id == category_id)
    total = q.count()
    items = (
        q.order_by(models.Product.created_at.desc(), models.Product.id)
        .offset(skip)
        .limit(limit)
        .all()
    )
    return items, total


def name_prefix_suggestions(
    db: Session, store_id: str, prefix: str, limit: int = 10, category_id: Optional[str] = None
) -> List[str]:
    q = db.query(models.Product.name).filter(
        models.Product.store_id == store_id,
        models.Product.is_archived.is_(False),
        models.Product.name.istartswith(prefix.strip(), autoescape=True),
    )
    if category_id:
        q = q.filter(models.Product.category_id == category_id)
    rows = (
        q.order_by(models.Product.downloads_count.desc(), models.Product.name)
        .limit(limit)
        .all()
    )
    return [r[0] for r in rows]


def iter_product_batches(db: Session, batch_size: int = 1000) -> Iterator[List[models.Product]]:
    """Yield every catalog entry in id order, ``batch_size`` at a time."""
    last_id = None
    while True:
        q = db.query(models.Product).order_by(models.Product.id)
        if last_id is not None:
            q = q.filter(models.Product.id > last_id)
        batch = q.limit(batch_size).all()
        if not batch:
            return
        yield batch
        last_id = batch[-1].id
