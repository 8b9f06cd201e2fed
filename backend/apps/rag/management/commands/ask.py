"""
Django management command to ask a question against the index.

Usage:
    python manage.py ask "How do I refresh a token?" --scope acme
"""
import json

from django.core.management.base import BaseCommand, CommandError

from apps.rag.embeddings import QueryValidationError
from apps.rag.pipeline import PipelineInput, build_pipeline


class Command(BaseCommand):
    help = 'Answer a question from the indexed documents'

    def add_arguments(self, parser):
        parser.add_argument('question')
        parser.add_argument('--scope', help='Tenant partition to search')
        parser.add_argument('--preamble', help='Organization-specific instructions')
        parser.add_argument('--timeout', type=float, help='Deadline in seconds for the whole query')
        parser.add_argument(
            '--json',
            action='store_true',
            help='Print the full result as JSON',
        )

    def handle(self, *args, **options):
        pipeline = build_pipeline()
        pipeline_input = PipelineInput(
            query=options['question'],
            scope=options['scope'],
            tenant_preamble=options['preamble'],
        )

        try:
            output = pipeline.process_query(pipeline_input, timeout=options['timeout'])
        except QueryValidationError as e:
            raise CommandError(str(e))

        if options['json']:
            self.stdout.write(json.dumps(output.to_dict(), indent=2))
            return

        self.stdout.write(output.answer)
        self.stdout.write('')
        for i, source in enumerate(output.sources, 1):
            self.stdout.write(f"[Source {i}] {source.title} ({source.relevance_score})")
        style = self.style.ERROR if output.failed else self.style.SUCCESS
        self.stdout.write(style(f"Confidence: {output.confidence}"))
