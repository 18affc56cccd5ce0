"""
Imagery Processing Pipeline

Four stages run in order for every ingested image:
1. Transform - stream the LEGO-style rendition from the transformation service
2. Extract - find the result image link in the streamed text
3. Download - fetch the result asset
4. Store - write it to the asset store and complete the record
"""
