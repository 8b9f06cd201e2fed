"""
Django management command to index a plain-text document.

Usage:
    python manage.py index_text guide.md --title "SSO Guide" --url https://... --scope acme
"""
import uuid
from pathlib import Path

from django.core.management.base import BaseCommand, CommandError

from apps.indexing.chunker import ChunkConfig, Document, DocumentMetadata
from apps.indexing.retry import ProviderError
from apps.rag.pipeline import build_pipeline


class Command(BaseCommand):
    help = 'Chunk, embed and store a plain-text document'

    def add_arguments(self, parser):
        parser.add_argument('path', help='Path to a UTF-8 text or markdown file')
        parser.add_argument('--id', dest='document_id', help='Document ID (random if omitted)')
        parser.add_argument('--title', help='Document title (file name if omitted)')
        parser.add_argument('--heading', help='Section heading shown in citations')
        parser.add_argument('--url', help='Origin URL of the document')
        parser.add_argument('--category', help='Document category')
        parser.add_argument('--scope', help='Tenant partition the document belongs to')
        parser.add_argument('--chunk-size', type=int, help='Target chunk size in tokens')
        parser.add_argument('--chunk-overlap', type=int, help='Chunk overlap in tokens')

    def handle(self, *args, **options):
        path = Path(options['path'])
        if not path.is_file():
            raise CommandError(f"File not found: {path}")

        document = Document(
            id=options['document_id'] or str(uuid.uuid4()),
            title=options['title'] or path.stem,
            raw_text=path.read_text(encoding='utf-8'),
            metadata=DocumentMetadata(
                source=str(path),
                category=options['category'],
                url=options['url'],
                org_scope=options['scope'],
                heading=options['heading'],
            ),
        )

        config = ChunkConfig.from_settings()
        if options['chunk_size']:
            config.chunk_size = options['chunk_size']
        if options['chunk_overlap'] is not None:
            config.chunk_overlap = options['chunk_overlap']

        pipeline = build_pipeline()
        try:
            chunks = pipeline.index_document(document, config)
        except ProviderError as e:
            raise CommandError(f"Indexing failed: {e}")

        self.stdout.write(self.style.SUCCESS(
            f"Indexed {document.id}: {len(chunks)} chunks"
        ))
