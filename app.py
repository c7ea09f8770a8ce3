import os

from college_app import create_app

app = create_app()

if __name__ == "__main__":
    # PORT / FLASK_DEBUG let several previews run side by side
    try:
        port = int(os.environ.get("PORT", "5000"))
    except ValueError:
        port = 5000
    debug = os.environ.get("FLASK_DEBUG", "1").lower() in {"1", "true", "on"}
    app.run(host="127.0.0.1", port=port, debug=debug)
