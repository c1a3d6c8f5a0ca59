from rpi_image_builder.main import run


run()
