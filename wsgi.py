from pvesync import create_app
from pvesync.config import ProductionConfig

app = create_app(ProductionConfig)

if __name__ == '__main__':
    app.run()
