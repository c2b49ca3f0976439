from mangum import Mangum

from api.app import create_app

app = create_app()

handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
