from flask import Flask, jsonify
from flask_cors import CORS
from flask_pymongo import PyMongo
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from dotenv import load_dotenv
from datetime import datetime, timedelta
import logging
import os

load_dotenv()

# Import blueprints
from blueprints.mpesa import init_mpesa_blueprint
from blueprints.notifications import init_notifications_blueprint

# Import database models
from models import DatabaseInitializer

from config.environment import MpesaConfig
from services.firebase_service import FirebaseService
from services.mpesa_service import AccessTokenCache, MpesaService
from utils.auth import create_token_required
from utils.mpesa_reconciliation import MpesaReconciler
from utils.mpesa_scheduler import MpesaScheduler
from utils.notification_dispatcher import NotificationDispatcher
from utils.serialization import serialize_doc
from utils.transaction_store import MpesaTransactionStore

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO'),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s'
)

app = Flask(__name__)

# Configuration
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'fanclash-dev-secret-key')
app.config['MONGO_URI'] = os.environ.get('MONGO_URI', 'mongodb://localhost:27017/fanclash')
app.config['JWT_EXPIRATION_DELTA'] = timedelta(hours=24)

# Initialize extensions
CORS(app, origins=['*'])
mongo = PyMongo(app)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    default_limits=["50000 per day", "5000 per hour"],
    storage_uri=os.environ.get('RATELIMIT_STORAGE_URI', 'memory://'),
)

# Initialize database on app startup
with app.app_context():
    print("\n" + "=" * 60)
    print("Initializing FanClash Database...")
    print("=" * 60)
    try:
        db_initializer = DatabaseInitializer(mongo.db)
        db_results = db_initializer.initialize_collections()

        if db_results['created']:
            print(f"✅ Created {len(db_results['created'])} new collections")
        if db_results['existing']:
            print(f"✅ Verified {len(db_results['existing'])} existing collections")
        if db_results['errors']:
            print(f"⚠️  {len(db_results['errors'])} errors during initialization")
    except Exception as e:
        print(f"⚠️  Database initialization error: {str(e)}")
    print("=" * 60 + "\n")

# M-Pesa gateway client; the token cache is shared by everything in this process
mpesa_config = MpesaConfig.from_env()
mpesa_token_cache = AccessTokenCache()
mpesa_service = MpesaService(mpesa_config, token_cache=mpesa_token_cache)

if not mpesa_config.is_configured():
    print("⚠️  M-Pesa credentials incomplete: payment endpoints will answer 503")

notification_dispatcher = NotificationDispatcher(mongo.db, push_service=FirebaseService())

token_required = create_token_required(mongo, app.config['SECRET_KEY'])

# Register blueprints
mpesa_blueprint = init_mpesa_blueprint(
    mongo, token_required, serialize_doc, mpesa_service,
    dispatcher=notification_dispatcher, limiter=limiter
)
notifications_blueprint = init_notifications_blueprint(mongo, token_required, serialize_doc)

app.register_blueprint(mpesa_blueprint)
app.register_blueprint(notifications_blueprint)

# Make limiter available to the app
app.limiter = limiter

mpesa_scheduler = None


def start_notification_worker():
    """Start the notification worker in this process (each gunicorn worker needs its own)"""
    notification_dispatcher.start_worker()


def start_mpesa_scheduler():
    """Start the periodic reconciliation sweep unless MPESA_DISABLE_SCHEDULER is set"""
    global mpesa_scheduler
    if os.environ.get('MPESA_DISABLE_SCHEDULER', '').lower() in ('1', 'true', 'yes'):
        print("ℹ️  M-Pesa reconciliation scheduler disabled")
        return None
    if mpesa_scheduler is not None:
        return mpesa_scheduler

    try:
        reconciler = MpesaReconciler(
            MpesaTransactionStore(mongo.db),
            mpesa_service,
            pending_expiry_minutes=mpesa_config.pending_expiry_minutes,
            dispatcher=notification_dispatcher,
        )
        mpesa_scheduler = MpesaScheduler(reconciler, mpesa_config.reconciliation_interval_minutes)
        mpesa_scheduler.start()
        print(f"✅ M-Pesa reconciliation every {mpesa_config.reconciliation_interval_minutes} min")
    except Exception as e:
        # Don't fail app startup if scheduler fails
        print(f"⚠️  Scheduler initialization error (non-fatal): {str(e)}")
        mpesa_scheduler = None
    return mpesa_scheduler


# Health check endpoint
@app.route('/health', methods=['GET'])
def health_check():
    return jsonify({
        'success': True,
        'message': 'FanClash Backend is running',
        'timestamp': datetime.utcnow().isoformat() + 'Z',
        'version': '1.0.0'
    })


@app.errorhandler(404)
def not_found(error):
    return jsonify({
        'success': False,
        'message': 'Endpoint not found',
        'error': 'The requested resource was not found on this server.'
    }), 404


@app.errorhandler(500)
def internal_error(error):
    return jsonify({
        'success': False,
        'message': 'Internal server error',
        'error': 'An unexpected error occurred. Please try again later.'
    }), 500


@app.errorhandler(400)
def bad_request(error):
    return jsonify({
        'success': False,
        'message': 'Bad request',
        'error': 'The request could not be understood by the server.'
    }), 400


if __name__ == '__main__':
    start_notification_worker()
    start_mpesa_scheduler()

    app.run(debug=True, host='0.0.0.0', port=5000, use_reloader=False)
