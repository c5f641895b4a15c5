"""
JSON-safe conversion of MongoDB documents
"""
from datetime import datetime
from decimal import Decimal

from bson import ObjectId


def _serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat() + 'Z' if value.tzinfo is None else value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [_serialize_value(item) for item in value]
    return value


def serialize_doc(doc):
    if not doc:
        return doc

    # Make a copy to avoid modifying the original
    doc = dict(doc)

    # Handle _id field
    if '_id' in doc:
        doc['id'] = str(doc['_id'])
        del doc['_id']

    for key, value in list(doc.items()):  # Use list() to avoid dict changed size during iteration
        doc[key] = _serialize_value(value)

    return doc
