"""
Image Processing Pipeline

Seven ordered stages:
1. Preprocess - EXIF orientation, downscale, denoise
2. Background removal - rembg segmentation, erosion, feather
3. Generation - styled product shot via the generative provider
4. Template - A/B/C layouts on square / portrait / story canvases
5. Watermark - free tier only
6. Compression - WebP / JPEG under the size target
7. Upload - variants and thumbnail to object storage
"""
