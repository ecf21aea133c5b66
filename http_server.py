#!/usr/bin/env python3
"""
corelist HTTP Server Runner
"""

import os

from dotenv import load_dotenv

from corelist.crosscutting.logging import setup_logging
from corelist.interfaces.http import HTTPServer


def main():
    """Run the HTTP server."""
    load_dotenv()
    setup_logging(os.getenv('LOG_LEVEL', 'INFO'))
    server = HTTPServer(
        host='localhost',
        port=int(os.getenv('PORT', '3001')),
        debug=True
    )
    server.run()


if __name__ == '__main__':
    main()
