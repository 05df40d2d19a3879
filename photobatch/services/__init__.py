"""
Services for the photo batch backend: lifecycle, batch driver, item pipeline and its collaborators.
"""
