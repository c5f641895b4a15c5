from datetime import datetime
from typing import Dict, List, Optional, Any
from bson import ObjectId


# Transaction lifecycle: pending -> completed | failed | expired
STATUS_INITIATED = 'initiated'
STATUS_PENDING = 'pending'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'
STATUS_EXPIRED = 'expired'

TRANSACTION_STATUSES = [STATUS_INITIATED, STATUS_PENDING, STATUS_COMPLETED, STATUS_FAILED, STATUS_EXPIRED]
TERMINAL_STATUSES = [STATUS_COMPLETED, STATUS_FAILED, STATUS_EXPIRED]
OPEN_STATUSES = [STATUS_INITIATED, STATUS_PENDING]


class DatabaseSchema:
    """
    Centralized database schema definitions for the payment collections.
    Provides index definitions and documents the stored fields.
    """

    # ==================== USERS COLLECTION ====================

    @staticmethod
    def get_user_schema() -> Dict[str, Any]:
        """
        Schema for users collection (owned by the auth module).
        Only the fields the payment flow reads are listed.
        """
        return {
            '_id': ObjectId,
            'email': str,
            'username': Optional[str],
            'phone': Optional[str],
            'role': str,  # 'user' or 'admin'
            'createdAt': datetime,
        }

    @staticmethod
    def get_user_indexes() -> List[Dict[str, Any]]:
        return [
            {'keys': [('email', 1)], 'unique': True, 'name': 'email_unique'},
            {'keys': [('role', 1)], 'name': 'role_index'},
        ]

    # ==================== MPESA_TRANSACTIONS COLLECTION ====================

    @staticmethod
    def get_mpesa_transaction_schema() -> Dict[str, Any]:
        """
        Schema for mpesa_transactions collection.
        One document per STK push attempt accepted by the gateway.
        """
        return {
            '_id': ObjectId,  # Auto-generated MongoDB ID
            'user_id': str,  # Required, users._id as string
            'phone_number': str,  # Normalized 2547XXXXXXXX
            'amount': float,  # Requested amount (> 0)
            'account_reference': str,
            'transaction_desc': str,

            # Correlation identifiers returned by the gateway
            'merchant_request_id': str,
            'checkout_request_id': str,  # Unique per attempt, primary lookup key

            # Initiation echo
            'response_code': str,
            'response_description': str,
            'customer_message': str,

            # Lifecycle
            'status': str,  # 'pending', 'completed', 'failed', 'expired'
            'result_code': Optional[int],  # Present only after callback or sweep
            'result_desc': Optional[str],
            'resolved_by': Optional[str],  # 'callback' or 'reconciliation'

            # Audit fields from the success callback metadata
            'mpesa_receipt_number': Optional[str],
            'paid_amount': Optional[float],
            'paid_phone_number': Optional[str],
            'callback_metadata': Optional[Dict[str, Any]],

            # Reconciliation bookkeeping
            'last_reconciled_at': Optional[datetime],
            'reconciliation_attempts': Optional[int],

            # Simulation flag (sandbox only)
            'is_simulated': Optional[bool],

            # Timestamps
            'created_at': datetime,
            'updated_at': datetime,
            'completed_at': Optional[datetime],  # Set only on terminal state
        }

    @staticmethod
    def get_mpesa_transaction_indexes() -> List[Dict[str, Any]]:
        """Define indexes for mpesa_transactions collection."""
        return [
            {'keys': [('checkout_request_id', 1)], 'unique': True, 'name': 'checkout_request_id_unique'},
            {'keys': [('merchant_request_id', 1)], 'name': 'merchant_request_id'},
            {'keys': [('checkout_request_id', 1), ('merchant_request_id', 1)], 'name': 'correlation_ids'},
            {'keys': [('user_id', 1), ('created_at', -1)], 'name': 'user_created_desc'},
            {'keys': [('status', 1), ('created_at', 1)], 'name': 'status_created'},
        ]

    # ==================== B2C_TRANSACTIONS COLLECTION ====================

    @staticmethod
    def get_b2c_transaction_schema() -> Dict[str, Any]:
        """
        Schema for b2c_transactions collection.
        One document per B2C payout accepted by the gateway.
        """
        return {
            '_id': ObjectId,
            'initiated_by': str,  # Admin users._id as string
            'recipient_user_id': Optional[str],
            'phone_number': str,
            'amount': float,
            'command_id': str,  # BusinessPayment, SalaryPayment, PromotionPayment
            'remarks': str,
            'occasion': Optional[str],
            'conversation_id': str,
            'originator_conversation_id': str,
            'response_code': str,
            'response_description': str,
            'status': str,  # 'pending', 'completed', 'failed'
            'result_code': Optional[int],
            'result_desc': Optional[str],
            'mpesa_transaction_id': Optional[str],
            'result_parameters': Optional[Dict[str, Any]],
            'created_at': datetime,
            'updated_at': datetime,
            'completed_at': Optional[datetime],
        }

    @staticmethod
    def get_b2c_transaction_indexes() -> List[Dict[str, Any]]:
        return [
            {'keys': [('conversation_id', 1)], 'unique': True, 'name': 'conversation_id_unique'},
            {'keys': [('originator_conversation_id', 1)], 'name': 'originator_conversation_id'},
            {'keys': [('status', 1), ('created_at', -1)], 'name': 'status_created_desc'},
        ]

    # ==================== MPESA_CALLBACKS COLLECTION ====================

    @staticmethod
    def get_mpesa_callback_schema() -> Dict[str, Any]:
        """
        Schema for mpesa_callbacks collection.
        Append-only audit log of every gateway delivery, matched or not.
        """
        return {
            '_id': ObjectId,
            'kind': str,  # 'stk', 'b2c_result', 'b2c_timeout'
            'merchant_request_id': Optional[str],
            'checkout_request_id': Optional[str],
            'conversation_id': Optional[str],
            'result_code': Optional[int],
            'outcome': str,  # 'applied', 'duplicate', 'unmatched', 'rejected'
            'payload': Dict[str, Any],
            'received_at': datetime,
        }

    @staticmethod
    def get_mpesa_callback_indexes() -> List[Dict[str, Any]]:
        return [
            {'keys': [('checkout_request_id', 1)], 'sparse': True, 'name': 'checkout_request_id'},
            {'keys': [('conversation_id', 1)], 'sparse': True, 'name': 'conversation_id'},
            {'keys': [('received_at', -1)], 'name': 'received_at_desc'},
        ]

    # ==================== FCM_TOKENS / NOTIFICATIONS ====================

    @staticmethod
    def get_fcm_token_indexes() -> List[Dict[str, Any]]:
        return [
            {'keys': [('user_id', 1)], 'name': 'user_id'},
            {'keys': [('fcm_token', 1)], 'unique': True, 'name': 'fcm_token_unique'},
        ]

    @staticmethod
    def get_notification_indexes() -> List[Dict[str, Any]]:
        return [
            {'keys': [('user_id', 1), ('created_at', -1)], 'name': 'user_created_desc'},
            {'keys': [('user_id', 1), ('is_read', 1)], 'name': 'user_unread'},
        ]


class DatabaseInitializer:
    """
    Database initialization and management utilities.
    Handles collection creation, index setup, and validation.
    """

    def __init__(self, mongo_db):
        """
        Initialize with MongoDB database instance.

        Args:
            mongo_db: PyMongo database instance
        """
        self.db = mongo_db
        self.schema = DatabaseSchema()

    def get_collection_indexes(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            'users': self.schema.get_user_indexes(),
            'mpesa_transactions': self.schema.get_mpesa_transaction_indexes(),
            'b2c_transactions': self.schema.get_b2c_transaction_indexes(),
            'mpesa_callbacks': self.schema.get_mpesa_callback_indexes(),
            'fcm_tokens': self.schema.get_fcm_token_indexes(),
            'notifications': self.schema.get_notification_indexes(),
        }

    def initialize_collections(self):
        """
        Initialize all collections with proper indexes.
        Safe to run multiple times - will skip if collections exist.
        """
        results = {
            'created': [],
            'existing': [],
            'indexes_created': [],
            'errors': []
        }

        existing_collections = set(self.db.list_collection_names())

        for collection_name, indexes in self.get_collection_indexes().items():
            try:
                if collection_name in existing_collections:
                    results['existing'].append(collection_name)
                    print(f"✓ Collection '{collection_name}' already exists")
                else:
                    self.db.create_collection(collection_name)
                    results['created'].append(collection_name)
                    print(f"✓ Created collection '{collection_name}'")

                collection = self.db[collection_name]
                existing_indexes = collection.index_information()

                for index_def in indexes:
                    index_name = index_def.get('name')
                    if index_name and index_name in existing_indexes:
                        continue

                    # Same key pattern under a different name counts as present
                    same_keys = any(
                        list(info.get('key', [])) == index_def['keys']
                        for name, info in existing_indexes.items()
                        if name != '_id_'
                    )
                    if same_keys:
                        continue

                    try:
                        created_index_name = collection.create_index(
                            index_def['keys'],
                            unique=index_def.get('unique', False),
                            sparse=index_def.get('sparse', False),
                            name=index_name
                        )
                        results['indexes_created'].append(f"{collection_name}.{created_index_name}")
                        print(f"  ✓ Created index '{created_index_name}' on '{collection_name}'")
                    except Exception as index_error:
                        error_msg = f"Failed to create index '{index_name}' on {collection_name}: {str(index_error)}"
                        results['errors'].append(error_msg)
                        print(f"  ✗ {error_msg}")

            except Exception as e:
                error_msg = f"Failed to initialize collection {collection_name}: {str(e)}"
                results['errors'].append(error_msg)
                print(f"✗ {error_msg}")

        return results

    def validate_collection_exists(self, collection_name: str) -> bool:
        return collection_name in self.db.list_collection_names()

    def get_collection_stats(self, collection_name: str) -> Dict[str, Any]:
        """
        Get statistics for a collection.

        Returns:
            dict: document count and index names
        """
        if not self.validate_collection_exists(collection_name):
            return {'error': f"Collection '{collection_name}' does not exist"}

        collection = self.db[collection_name]
        return {
            'name': collection_name,
            'count': collection.count_documents({}),
            'indexes': sorted(collection.index_information().keys()),
        }

    def get_all_collections_stats(self) -> Dict[str, Any]:
        return {
            name: self.get_collection_stats(name)
            for name in self.get_collection_indexes()
        }


__all__ = [
    'DatabaseSchema',
    'DatabaseInitializer',
    'TRANSACTION_STATUSES',
    'TERMINAL_STATUSES',
]


if __name__ == '__main__':
    """
    Standalone script to initialize database collections and indexes.
    """
    import os
    from pymongo import MongoClient

    mongo_uri = os.environ.get('MONGO_URI', 'mongodb://localhost:27017/fanclash')
    client = MongoClient(mongo_uri)

    print("=" * 60)
    print("FanClash Backend - Database Initialization")
    print("=" * 60)
    print(f"MongoDB URI: {mongo_uri}")

    initializer = DatabaseInitializer(client.get_database())
    results = initializer.initialize_collections()

    print()
    print(f"Collections created: {len(results['created'])}")
    print(f"Collections already existing: {len(results['existing'])}")
    print(f"Indexes created: {len(results['indexes_created'])}")
    for error in results['errors']:
        print(f"  - {error}")

    for collection_name, collection_stats in initializer.get_all_collections_stats().items():
        if 'error' not in collection_stats:
            print(f"{collection_name}: {collection_stats['count']} documents, "
                  f"{len(collection_stats['indexes'])} indexes")

    client.close()
