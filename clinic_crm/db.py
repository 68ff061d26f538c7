from datetime import date, datetime

import certifi
from bson.objectid import ObjectId
from pymongo import MongoClient

from . import config

# MongoDB client setup for serverless - lazy connection
mongo_client = None
db = None


def init_db(database, client=None):
    """Use an existing database handle (a test double or a shared client)."""
    global mongo_client, db
    mongo_client = client
    db = database
    return db


def get_db():
    """Get database connection - creates it lazily for serverless"""
    global mongo_client, db

    if db is not None:
        if mongo_client is None:
            return db
        try:
            # Test if connection is still alive with shorter timeout
            mongo_client.admin.command('ping', maxTimeMS=3000)
            return db
        except Exception as e:
            # Connection died, reset it
            print(f"Connection ping failed, resetting: {e}")
            mongo_client = None
            db = None

    if not config.MONGO_URI:
        print("MONGO_URI not set")
        return None

    try:
        print("Creating new MongoDB connection...")
        options = dict(
            serverSelectionTimeoutMS=10000,
            connectTimeoutMS=10000,
            socketTimeoutMS=45000,
            maxPoolSize=10,
            minPoolSize=1,
            retryWrites=True,
            retryReads=True,
            w='majority',
        )
        if config.MONGO_URI.startswith('mongodb+srv://') or 'tls=true' in config.MONGO_URI:
            options['tlsCAFile'] = certifi.where()
        mongo_client = MongoClient(config.MONGO_URI, **options)
        mongo_client.admin.command('ping', maxTimeMS=5000)
        # Extract database name from URI or use default
        db_name = config.MONGO_DB_NAME or config.MONGO_URI.split('/')[-1].split('?')[0] or 'clinic_crm'
        db = mongo_client[db_name]
        print(f"MongoDB connected to database: {db_name}")
        return db
    except Exception as e:
        print(f"MongoDB connection error: {type(e).__name__}: {e}")
        mongo_client = None
        db = None
        return None


def check_db():
    """Check and test database connection"""
    try:
        return get_db() is not None
    except Exception as e:
        print(f"Database check failed: {e}")
        return False


def clean_input_data(data):
    """Strip trailing and leading spaces from string values in a dictionary."""
    if not isinstance(data, dict):
        return data

    cleaned = {}
    for key, value in data.items():
        if isinstance(value, str):
            cleaned[key] = value.strip()
        elif isinstance(value, dict):
            cleaned[key] = clean_input_data(value)
        elif isinstance(value, list):
            cleaned[key] = [clean_input_data(item) if isinstance(item, dict) else item.strip() if isinstance(item, str) else item for item in value]
        else:
            cleaned[key] = value
    return cleaned


def id_query(item_id):
    """Match either an ObjectId ``_id`` or a plain string id such as ``PAT001``."""
    if isinstance(item_id, ObjectId):
        return {'_id': item_id}
    item_id = str(item_id)
    if ObjectId.is_valid(item_id):
        return {'_id': {'$in': [ObjectId(item_id), item_id]}}
    return {'_id': item_id}


def serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [serialize_value(v) for v in value]
    return value


def serialize_doc(doc):
    """JSON-safe copy of a document with ``_id`` exposed as ``id``."""
    if doc is None:
        return None
    result = {k: serialize_value(v) for k, v in doc.items() if k != '_id'}
    if '_id' in doc:
        result['id'] = str(doc['_id'])
    return result
