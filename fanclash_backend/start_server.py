#!/usr/bin/env python3
"""
Start the FanClash Backend development server
"""

import os
import sys

if __name__ == '__main__':
    # Set environment variables for development
    os.environ.setdefault('MONGO_URI', 'mongodb://localhost:27017/fanclash')
    os.environ.setdefault('SECRET_KEY', 'fanclash-dev-secret-key')
    os.environ.setdefault('MPESA_ENVIRONMENT', 'sandbox')

    from app import app, start_mpesa_scheduler, start_notification_worker

    print("Starting FanClash Backend...")
    print(f"MongoDB URI: {os.environ.get('MONGO_URI')}")
    print(f"M-Pesa environment: {os.environ.get('MPESA_ENVIRONMENT')}")
    print("Server will be available at: http://localhost:5000")
    print("Press Ctrl+C to stop the server")

    start_notification_worker()
    start_mpesa_scheduler()

    try:
        app.run(debug=True, host='0.0.0.0', port=5000, use_reloader=False)
    except KeyboardInterrupt:
        print("\nServer stopped by user")
        sys.exit(0)
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
