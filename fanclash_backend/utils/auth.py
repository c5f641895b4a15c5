"""
JWT bearer-token decorators shared by the blueprints
"""
from functools import wraps

import jwt
from bson import ObjectId
from bson.errors import InvalidId
from flask import g, jsonify, request


def create_token_required(mongo, secret_key):
    """Build a token_required decorator bound to this app's database and signing key"""

    def token_required(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            token = request.headers.get('Authorization')
            if not token:
                return jsonify({'success': False, 'message': 'Token is missing'}), 401

            try:
                if token.startswith('Bearer '):
                    token = token[7:]
                data = jwt.decode(token, secret_key, algorithms=['HS256'])

                # Validate user_id exists in token
                if 'user_id' not in data:
                    return jsonify({'success': False, 'message': 'Invalid token format'}), 401

                try:
                    current_user = mongo.db.users.find_one({'_id': ObjectId(data['user_id'])})
                    if not current_user:
                        return jsonify({'success': False, 'message': 'User not found'}), 401
                except InvalidId:
                    return jsonify({'success': False, 'message': 'Invalid token format'}), 401
                except Exception as db_error:
                    print(f"Database error in token validation: {str(db_error)}")
                    return jsonify({'success': False, 'message': 'Database connection error'}), 500

                g.current_user_id = current_user['_id']

            except jwt.ExpiredSignatureError:
                return jsonify({'success': False, 'message': 'Token has expired'}), 401
            except jwt.InvalidTokenError:
                return jsonify({'success': False, 'message': 'Invalid token'}), 401

            return f(current_user, *args, **kwargs)
        return decorated

    return token_required


def admin_required(f):
    """Stack under token_required: rejects non-admin users with 403"""
    @wraps(f)
    def decorated(current_user, *args, **kwargs):
        if current_user.get('role') != 'admin':
            return jsonify({'success': False, 'message': 'Admin access required'}), 403
        return f(current_user, *args, **kwargs)
    return decorated
