#!/usr/bin/env python3
"""
Run script for 공무원맛집.
This script configures logging and starts the Flask application.
"""

import logging
import os
import sys


def main():
    logging.basicConfig(
        level=os.getenv('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    from app import app

    port = int(os.getenv('PORT', 5000))
    print("Starting 공무원맛집...")
    if not app.config['SUPABASE_URL'] or not app.config['SUPABASE_ANON_KEY']:
        print("Warning: SUPABASE_URL / SUPABASE_ANON_KEY are not set; backend calls will fail.")
    print(f"Web interface: http://localhost:{port}")
    print(f"API base URL: http://localhost:{port}/api")
    print("Press Ctrl+C to stop the server")

    # Run the application
    app.run(debug=os.getenv('FLASK_DEBUG', '0') == '1', host='0.0.0.0', port=port)


if __name__ == '__main__':
    try:
        main()
    except KeyboardInterrupt:
        print("\nShutting down server...")
        sys.exit(0)
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
