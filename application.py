"""
Elastic Beanstalk Entry Point

Beanstalk's Python platform looks for a WSGI callable named `application`.
"""
from backend.app import app as application

# For local testing
if __name__ == "__main__":
    application.run(debug=True)
