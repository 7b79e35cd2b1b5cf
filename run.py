import os
from stockkit import create_app

# Create the Flask app instance
app = create_app()

if __name__ == "__main__":
    # Run the app in debug mode for development
    app.run(debug=os.getenv('FLASK_DEBUG', '1') == '1', host="0.0.0.0", port=int(os.getenv('PORT', 8080)))
