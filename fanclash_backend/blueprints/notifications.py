"""
Notifications Blueprint - device tokens and in-app notifications
Payment outcomes land here through the notification dispatcher
"""
from flask import Blueprint, request, jsonify
from datetime import datetime
from bson import ObjectId

VALID_PLATFORMS = ['android', 'ios', 'web']


def init_notifications_blueprint(mongo, token_required, serialize_doc):
    """Initialize the notifications blueprint with database and config"""
    notifications_bp = Blueprint('notifications', __name__, url_prefix='/api/notifications')

    @notifications_bp.route('/register-token', methods=['POST'])
    @token_required
    def register_token(current_user):
        """
        Register (or refresh) the caller's FCM device token
        """
        try:
            data = request.get_json(silent=True) or {}
            if not isinstance(data, dict):
                return jsonify({
                    'success': False,
                    'message': 'Request body must be a JSON object',
                    'errors': {'general': ['Request body must be a JSON object']}
                }), 400
            fcm_token = (data.get('fcm_token') or '').strip()
            platform = (data.get('platform') or 'android').lower()

            if not fcm_token:
                return jsonify({
                    'success': False,
                    'message': 'fcm_token is required',
                    'errors': {'fcm_token': ['This field is required']}
                }), 400

            if platform not in VALID_PLATFORMS:
                return jsonify({
                    'success': False,
                    'message': f'Invalid platform. Must be one of: {", ".join(VALID_PLATFORMS)}',
                    'errors': {'platform': ['Invalid platform']}
                }), 400

            user_id = str(current_user['_id'])
            now = datetime.utcnow()
            mongo.db.fcm_tokens.update_one(
                {'fcm_token': fcm_token},
                {
                    '$set': {'user_id': user_id, 'platform': platform, 'updated_at': now},
                    '$setOnInsert': {'created_at': now},
                },
                upsert=True
            )
            print(f'INFO: Registered {platform} FCM token for user {user_id}')

            return jsonify({
                'success': True,
                'message': 'Token registered successfully'
            })

        except Exception as e:
            print(f'ERROR: Failed to register FCM token: {str(e)}')
            return jsonify({
                'success': False,
                'message': 'Failed to register token',
                'errors': {'general': [str(e)]}
            }), 500

    @notifications_bp.route('/list', methods=['GET'])
    @token_required
    def get_user_notifications(current_user):
        """
        Get notifications for the current user, newest first
        """
        try:
            user_id = str(current_user['_id'])

            limit = min(int(request.args.get('limit', 50)), 100)  # Max 100 per page
            unread_only = request.args.get('unread_only', 'false').lower() == 'true'

            query = {'user_id': user_id}
            if unread_only:
                query['is_read'] = False

            notifications = list(mongo.db.notifications.find(query)
                                 .sort('created_at', -1)
                                 .limit(limit))

            unread_count = mongo.db.notifications.count_documents({
                'user_id': user_id,
                'is_read': False
            })

            return jsonify({
                'success': True,
                'data': {
                    'notifications': [serialize_doc(n) for n in notifications],
                    'unreadCount': unread_count
                },
                'message': 'Notifications retrieved successfully'
            })

        except ValueError:
            return jsonify({
                'success': False,
                'message': 'limit must be an integer',
                'errors': {'limit': ['Invalid value']}
            }), 400
        except Exception as e:
            return jsonify({
                'success': False,
                'message': 'Failed to retrieve notifications',
                'errors': {'general': [str(e)]}
            }), 500

    @notifications_bp.route('/mark-read', methods=['POST'])
    @token_required
    def mark_notifications_read(current_user):
        """
        Mark the listed notifications as read, or all of them when none are listed
        """
        try:
            data = request.get_json(silent=True) or {}
            if not isinstance(data, dict):
                return jsonify({
                    'success': False,
                    'message': 'Request body must be a JSON object',
                    'errors': {'general': ['Request body must be a JSON object']}
                }), 400
            user_id = str(current_user['_id'])
            notification_ids = data.get('notification_ids') or []

            query = {'user_id': user_id, 'is_read': False}
            if notification_ids:
                query['_id'] = {'$in': [ObjectId(nid) for nid in notification_ids if ObjectId.is_valid(nid)]}

            result = mongo.db.notifications.update_many(
                query,
                {'$set': {'is_read': True, 'read_at': datetime.utcnow()}}
            )

            return jsonify({
                'success': True,
                'data': {'markedCount': result.modified_count},
                'message': f'Marked {result.modified_count} notifications as read'
            })

        except Exception as e:
            return jsonify({
                'success': False,
                'message': 'Failed to mark notifications as read',
                'errors': {'general': [str(e)]}
            }), 500

    return notifications_bp


def create_user_notification(mongo_db, user_id, notification_type, title, body, data=None):
    """
    Helper function to create a notification for a user
    This can be called from other parts of the system
    """
    try:
        notification = {
            'user_id': str(user_id),
            'notification_type': notification_type,
            'title': title,
            'body': body,
            'data': data or {},
            'is_read': False,
            'created_at': datetime.utcnow()
        }

        result = mongo_db.notifications.insert_one(notification)
        return str(result.inserted_id)

    except Exception as e:
        print(f'ERROR: Failed to create notification: {str(e)}')
        return None
