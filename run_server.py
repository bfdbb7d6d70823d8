import os

from waitress import serve

from kcreport import create_app
from kcreport.gateways.factory import close_gateways

app = create_app()

if __name__ == '__main__':
    host = os.getenv('HOST', '127.0.0.1')
    port = int(os.getenv('PORT', '5050'))
    print(f"kcreport server starting on http://{host}:{port} (waitress) ...")
    print("Press Ctrl+C to stop.")
    try:
        serve(app, host=host, port=port, threads=int(os.getenv('THREADS', '4')))
    finally:
        with app.app_context():
            close_gateways()
