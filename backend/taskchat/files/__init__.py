"""Attachment upload and storage for chat messages.

Files are validated against a type allow-list, stored under collision-free
names in the uploads directory, and served back read-only by URL.

Supported file types:
- Images: any image/* type
- Documents: pdf, doc/docx, xls/xlsx, ppt/pptx, plain text
- Archives: zip, rar
- Up to 5 files per upload, 10MB each
"""
